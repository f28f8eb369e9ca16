"""
Staged runs with explicit checkpoints.

Each stage writes its result to a file in the work directory and returns a
StageResult. When a run starts from a later stage, the results of earlier
stages are loaded from those files instead of being recomputed; the caller
chooses the starting stage, stages never guess.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Generic, List, Optional, TypeVar

from rich.console import Console

from ..config import ConfigError, RecoveryConfig
from ..extraction.snapshots import (
    FLOW_NODE_INSTANCES,
    KINDS,
    ExtractionResult,
    SnapshotReader,
    clear_outputs,
    extract_snapshots,
)
from ..io.dumps import iter_dump_records
from ..io.keyfiles import load_keys, read_keys, write_key_set, write_keys
from ..schemas.records import FlowNodeRef, VariableRemoval
from ..utils.json_utils import read_json, read_jsonl, write_json, write_jsonl
from .projection import filter_flow_nodes, join_variables, reduce_flow_node, select_named_variables
from .range_filter import filter_affected
from .reconcile import select_keys_to_cancel

console = Console()

T = TypeVar("T")

COMPUTED = "computed"
CHECKPOINT = "checkpoint"

SEARCH_STAGES = ("extract", "affected", "variables", "flow_nodes", "join")


@dataclass
class StageResult(Generic[T]):
    name: str
    value: T
    source: str
    paths: List[Path] = field(default_factory=list)


def _require(path: Path, stage: str) -> Path:
    if not path.exists():
        raise FileNotFoundError(f"Checkpoint for stage '{stage}' not found: {path}")
    return path


def _extract_outputs(cfg: RecoveryConfig) -> Dict[str, Path]:
    return {kind: cfg.file_path(kind) for kind in KINDS}


# extract


def run_extract(cfg: RecoveryConfig, reader: SnapshotReader, fresh: bool = False) -> StageResult[ExtractionResult]:
    root = cfg.snapshot_root
    if root is None:
        raise ConfigError("'extract.snapshot_root' is required to extract snapshots")
    outputs = _extract_outputs(cfg)
    if fresh:
        clear_outputs(outputs)
    result = extract_snapshots(root, reader, outputs)
    return StageResult("extract", result, COMPUTED, list(outputs.values()))


# affected process instances


def compute_affected(cfg: RecoveryConfig) -> StageResult[List[int]]:
    source = _require(cfg.file_path("process_instances"), "extract")
    out = cfg.file_path("affected_instances")
    affected = list(filter_affected(read_keys(source), cfg.lost_ranges))
    write_keys(out, affected)
    console.print(f"[bold]Affected process instances:[/bold] {len(affected)} -> {out}")
    return StageResult("affected", affected, COMPUTED, [out])


def load_affected(cfg: RecoveryConfig) -> StageResult[List[int]]:
    path = _require(cfg.file_path("affected_instances"), "affected")
    return StageResult("affected", load_keys(path), CHECKPOINT, [path])


# variables with the configured name


def compute_named_variables(cfg: RecoveryConfig) -> StageResult[List[Dict[str, Any]]]:
    source = _require(cfg.file_path("variables"), "extract")
    out = cfg.file_path("named_variables")
    records = list(select_named_variables(iter_dump_records(source), cfg.variable_name))
    write_json(out, records)
    console.print(f"[bold]{cfg.variable_name} variables:[/bold] {len(records)} -> {out}")
    return StageResult("variables", records, COMPUTED, [out])


def load_named_variables(cfg: RecoveryConfig) -> StageResult[List[Dict[str, Any]]]:
    path = _require(cfg.file_path("named_variables"), "variables")
    return StageResult("variables", read_json(path), CHECKPOINT, [path])


# flow nodes of affected process instances


def compute_flow_nodes(cfg: RecoveryConfig, affected: List[int]) -> StageResult[Dict[str, int]]:
    source = _require(cfg.file_path(FLOW_NODE_INSTANCES), "extract")
    small = cfg.file_path("flow_node_instances_small")
    out = cfg.file_path("flow_node_mapping")

    reduced = write_jsonl(small, (reduce_flow_node(r).model_dump() for r in iter_dump_records(source)))
    console.print(f"[bold]Flow node instances reduced:[/bold] {reduced} -> {small}")

    refs = (FlowNodeRef.model_validate(obj) for obj in read_jsonl(small))
    mapping = filter_flow_nodes(
        refs,
        set(affected),
        batch_size=cfg.projection_batch_size,
        workers=cfg.projection_workers,
    )
    write_json(out, mapping)
    console.print(f"[bold]Flow node instances for removal:[/bold] {len(mapping)} -> {out}")
    return StageResult("flow_nodes", mapping, COMPUTED, [small, out])


def load_flow_nodes(cfg: RecoveryConfig) -> StageResult[Dict[str, int]]:
    path = _require(cfg.file_path("flow_node_mapping"), "flow_nodes")
    mapping = {str(k): int(v) for k, v in read_json(path).items()}
    return StageResult("flow_nodes", mapping, CHECKPOINT, [path])


# variables joined to their process instance


def compute_join(
    cfg: RecoveryConfig,
    variables: List[Dict[str, Any]],
    mapping: Dict[str, int],
) -> StageResult[List[VariableRemoval]]:
    out = cfg.file_path("variable_removals")
    joined = join_variables(variables, mapping)
    write_json(out, [v.model_dump() for v in joined])
    console.print(f"[bold]{cfg.variable_name} variables for removal:[/bold] {len(joined)} -> {out}")
    return StageResult("join", joined, COMPUTED, [out])


def run_search_missing(
    cfg: RecoveryConfig,
    reader: Optional[SnapshotReader] = None,
    from_stage: str = "extract",
    fresh: bool = False,
) -> Dict[str, StageResult]:
    """
    Run the snapshot side of the recovery from ``from_stage`` onwards; stages
    before it are loaded from their checkpoint files where later stages need them.
    """
    if from_stage not in SEARCH_STAGES:
        raise ValueError(f"Unknown stage '{from_stage}', expected one of {', '.join(SEARCH_STAGES)}")
    start = SEARCH_STAGES.index(from_stage)

    def computing(stage: str) -> bool:
        return SEARCH_STAGES.index(stage) >= start

    results: Dict[str, StageResult] = {}
    if computing("extract"):
        if reader is None:
            raise ValueError("A snapshot reader is required to run the extract stage")
        results["extract"] = run_extract(cfg, reader, fresh=fresh)

    if computing("affected"):
        results["affected"] = compute_affected(cfg)
    elif computing("flow_nodes"):
        results["affected"] = load_affected(cfg)
    results["variables"] = compute_named_variables(cfg) if computing("variables") else load_named_variables(cfg)
    results["flow_nodes"] = (
        compute_flow_nodes(cfg, results["affected"].value) if computing("flow_nodes") else load_flow_nodes(cfg)
    )
    results["join"] = compute_join(cfg, results["variables"].value, results["flow_nodes"].value)
    return results


# index side


def compute_index_cancellations(cfg: RecoveryConfig, client: Any) -> StageResult[List[int]]:
    trusted_path = _require(cfg.file_path("process_instances"), "extract")
    trusted = set(read_keys(trusted_path))
    console.print(f"[bold]Process instances in snapshots:[/bold] {len(trusted)}")
    keys = select_keys_to_cancel(client, cfg.index_name("list_view"), trusted, cfg.reconcile)
    paths = write_key_set(cfg.file_path("index_cancellations"), keys)
    console.print("Process instances for cancellation have been written to the file.")
    return StageResult("reconcile", keys, COMPUTED, paths)


def load_index_cancellations(cfg: RecoveryConfig) -> StageResult[List[int]]:
    path = _require(cfg.file_path("index_cancellations"), "reconcile")
    return StageResult("reconcile", load_keys(path), CHECKPOINT, [path])
