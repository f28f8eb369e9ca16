from __future__ import annotations

import base64
import json
from pathlib import Path
from typing import Iterator

import pytest

from instance_recovery.config import RecoveryConfig
from instance_recovery.pipeline.stages import (
    CHECKPOINT,
    COMPUTED,
    compute_flow_nodes,
    compute_index_cancellations,
    load_index_cancellations,
    run_search_missing,
)


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


SNAPSHOT_OUTPUT = {
    "process_instances": ["50", "150", "200", "201"],
    "variables": [
        json.dumps(
            {
                "data": [
                    {"key": "42:varName", "value": {"key": 900, "value": _b64("hello")}},
                    {"key": "99:varName", "value": {"key": 901, "value": _b64("orphan")}},
                    {"key": "42:other", "value": {"key": 902, "value": _b64("ignored")}},
                ]
            }
        )
    ],
    "flow_node_instances": [
        json.dumps(
            {
                "data": [
                    {"key": 42, "value": {"elementRecord": {"processInstanceRecord": {"processInstanceKey": 150}}}},
                    {"key": 99, "value": {"elementRecord": {"processInstanceRecord": {"processInstanceKey": 50}}}},
                    {"key": 43, "value": {"elementRecord": {"processInstanceRecord": {"processInstanceKey": 200}}}},
                ]
            }
        )
    ],
}


class FakeReader:
    def stream(self, kind: str, snapshot_path: Path) -> Iterator[str]:
        return iter(SNAPSHOT_OUTPUT[kind])


def _cfg(tmp_path: Path) -> RecoveryConfig:
    (tmp_path / "data" / "1" / "snapshots" / "gen-1").mkdir(parents=True)
    return RecoveryConfig(
        raw={
            "io": {"work_dir": str(tmp_path / "work")},
            "lost_ranges": [[100, 200]],
            "extract": {"snapshot_root": str(tmp_path / "data")},
            "projection": {"batch_size": 2, "workers": 2},
            "reconcile": {"page_size": 2},
        }
    )


def test_full_search_run(tmp_path: Path):
    cfg = _cfg(tmp_path)
    results = run_search_missing(cfg, FakeReader())

    assert all(r.source == COMPUTED for r in results.values())
    assert results["affected"].value == [150, 200]
    assert len(results["variables"].value) == 2
    assert results["flow_nodes"].value == {"42": 150, "43": 200}

    joined = results["join"].value
    assert [(v.key, v.process_instance_key, v.flow_node_instance_key, v.value) for v in joined] == [
        (900, 150, "42", "hello")
    ]

    written = json.loads(cfg.file_path("variable_removals").read_text(encoding="utf-8"))
    assert written[0]["value_base64"] == _b64("hello")
    assert cfg.file_path("affected_instances").read_text(encoding="utf-8") == "150\n200\n"
    assert json.loads(cfg.file_path("flow_node_mapping").read_text(encoding="utf-8")) == {"42": 150, "43": 200}


def test_fresh_run_does_not_double_append(tmp_path: Path):
    cfg = _cfg(tmp_path)
    run_search_missing(cfg, FakeReader())
    run_search_missing(cfg, FakeReader(), fresh=True)
    assert cfg.file_path("process_instances").read_text(encoding="utf-8").splitlines() == ["50", "150", "200", "201"]


def test_resume_from_join_uses_checkpoints(tmp_path: Path):
    cfg = _cfg(tmp_path)
    run_search_missing(cfg, FakeReader())
    # raw dumps are not needed any more
    for name in ("process_instances", "variables", "flow_node_instances"):
        cfg.file_path(name).unlink()

    results = run_search_missing(cfg, from_stage="join")
    assert "extract" not in results
    assert "affected" not in results
    assert results["variables"].source == CHECKPOINT
    assert results["flow_nodes"].source == CHECKPOINT
    assert results["flow_nodes"].value == {"42": 150, "43": 200}
    assert results["join"].source == COMPUTED
    assert len(results["join"].value) == 1


def test_resume_from_flow_nodes_loads_affected(tmp_path: Path):
    cfg = _cfg(tmp_path)
    run_search_missing(cfg, FakeReader())
    results = run_search_missing(cfg, from_stage="flow_nodes")
    assert results["affected"].source == CHECKPOINT
    assert results["affected"].value == [150, 200]
    assert results["flow_nodes"].source == COMPUTED


def test_missing_checkpoint(tmp_path: Path):
    cfg = _cfg(tmp_path)
    with pytest.raises(FileNotFoundError, match="variables"):
        run_search_missing(cfg, from_stage="join")


def test_unknown_stage(tmp_path: Path):
    with pytest.raises(ValueError):
        run_search_missing(_cfg(tmp_path), FakeReader(), from_stage="bogus")


def test_index_cancellations_round_trip(tmp_path: Path, fake_client_factory):
    cfg = _cfg(tmp_path)
    cfg.file_path("process_instances").parent.mkdir(parents=True)
    cfg.file_path("process_instances").write_text("1\n2\n3\n", encoding="utf-8")

    client = fake_client_factory(pages=[[2, 3], [4, 5]])
    computed = compute_index_cancellations(cfg, client)
    assert computed.value == [4, 5]
    assert computed.source == COMPUTED
    path = cfg.file_path("index_cancellations")
    assert json.loads(path.with_name(path.name + ".json").read_text(encoding="utf-8")) == [4, 5]

    loaded = load_index_cancellations(cfg)
    assert loaded.value == [4, 5]
    assert loaded.source == CHECKPOINT


def test_halted_flow_node_stage_leaves_no_partial_files(tmp_path: Path):
    cfg = _cfg(tmp_path)
    dump = cfg.file_path("flow_node_instances")
    dump.parent.mkdir(parents=True)
    good = {"key": 1, "value": {"elementRecord": {"processInstanceRecord": {"processInstanceKey": 150}}}}
    dump.write_text(json.dumps({"data": [good, {"key": 2, "value": {}}]}), encoding="utf-8")

    with pytest.raises(ValueError, match="Malformed flow node record"):
        compute_flow_nodes(cfg, [150])
    assert sorted(p.name for p in dump.parent.iterdir()) == [dump.name]


def test_index_cancellations_never_overlap_affected_instances(tmp_path: Path, fake_client_factory):
    cfg = _cfg(tmp_path)
    affected = run_search_missing(cfg, FakeReader())["affected"].value

    # the index still holds affected instances next to ones the snapshots never saw
    client = fake_client_factory(pages=[[150, 300], [200, 400]])
    reconciled = compute_index_cancellations(cfg, client).value

    assert reconciled == [300, 400]
    assert set(affected).isdisjoint(reconciled)
