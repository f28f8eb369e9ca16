from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from .schemas.records import LostRange


class ConfigError(Exception):
    pass


DEFAULT_FILES: Dict[str, str] = {
    "process_instances": "process-instances",
    "variables": "variables.json",
    "flow_node_instances": "flow-node-instances.json",
    "flow_node_instances_small": "flow-node-instances-small.jsonl",
    "named_variables": "varNameVars.json",
    "affected_instances": "process-instances-4-removal",
    "flow_node_mapping": "flow-node-instances-4-removal.json",
    "variable_removals": "varNameVars-4-removal.json",
    "index_cancellations": "process-instances-2-cancel-in-operate",
}

DEFAULT_INDICES: Dict[str, str] = {
    "list_view": "operate-list-view-8.3.0_",
    "flow_node_instance": "operate-flownode-instance-8.3.1_",
    "incident": "operate-incident-8.3.1_",
    "post_importer_queue": "operate-post-importer-queue-8.3.0_",
}

DEFAULT_EXTRACT_COMMANDS: Dict[str, List[str]] = {
    "process_instances": ["./pr-inst.sh", "{snapshot}"],
    "variables": ["java", "-jar", "zdb.jar", "state", "list", "-p={snapshot}", "-cf=VARIABLES", "-kf=ls"],
    "flow_node_instances": [
        "java", "-jar", "zdb.jar", "state", "list", "-p={snapshot}", "-cf=ELEMENT_INSTANCE_KEY", "-kf=l",
    ],
}


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def parse_lost_ranges(items: Any) -> List[LostRange]:
    """
    Parse ``[[start, end], ...]`` (or ``[{start:, end:}, ...]``) into sorted ranges.
    Overlapping ranges are rejected.
    """
    if not items:
        raise ConfigError("'lost_ranges' must list at least one [start, end] pair")
    ranges: List[LostRange] = []
    for item in items:
        try:
            if isinstance(item, dict):
                ranges.append(LostRange.model_validate(item))
            else:
                start, end = item
                ranges.append(LostRange(start=int(start), end=int(end)))
        except (TypeError, ValueError, ValidationError) as e:
            raise ConfigError(f"Invalid lost range {item!r}: {e}") from e
    ranges.sort(key=lambda r: r.start)
    for prev, cur in zip(ranges, ranges[1:]):
        if cur.start <= prev.end:
            raise ConfigError(
                f"Lost ranges overlap: [{prev.start}, {prev.end}] and [{cur.start}, {cur.end}]"
            )
    return ranges


@dataclass
class RecoveryConfig:
    raw: Dict[str, Any]

    # io
    @property
    def work_dir(self) -> Path:
        return Path(str(_section(self.raw, "io").get("work_dir", "work")))

    def file_path(self, name: str) -> Path:
        files = {**DEFAULT_FILES, **(_section(self.raw, "io").get("files") or {})}
        if name not in files:
            raise ConfigError(f"Unknown output file '{name}'")
        return self.work_dir / str(files[name])

    @property
    def lost_ranges(self) -> List[LostRange]:
        return parse_lost_ranges(self.raw.get("lost_ranges"))

    # extract
    @property
    def snapshot_root(self) -> Optional[Path]:
        root = _section(self.raw, "extract").get("snapshot_root")
        return Path(str(root)) if root else None

    @property
    def extract_commands(self) -> Dict[str, List[str]]:
        configured = _section(self.raw, "extract").get("commands") or {}
        commands = {**DEFAULT_EXTRACT_COMMANDS, **configured}
        return {kind: [str(a) for a in argv] for kind, argv in commands.items()}

    # projection
    @property
    def variable_name(self) -> str:
        return str(_section(self.raw, "projection").get("variable_name", "varName"))

    @property
    def projection_batch_size(self) -> int:
        return int(_section(self.raw, "projection").get("batch_size", 500_000))

    @property
    def projection_workers(self) -> int:
        return int(_section(self.raw, "projection").get("workers", 4))

    # index
    @property
    def index_url(self) -> str:
        return str(_section(self.raw, "index").get("url", "http://localhost:9200"))

    @property
    def index_username(self) -> Optional[str]:
        return _section(self.raw, "index").get("username")

    @property
    def index_password(self) -> Optional[str]:
        env_name = str(_section(self.raw, "index").get("password_env", "ES_PASSWORD"))
        return os.getenv(env_name)

    @property
    def index_request_timeout_s(self) -> float:
        return float(_section(self.raw, "index").get("request_timeout_s", 120))

    def index_name(self, name: str) -> str:
        indices = {**DEFAULT_INDICES, **(_section(self.raw, "index").get("indices") or {})}
        if name not in indices:
            raise ConfigError(f"Unknown index '{name}'")
        return str(indices[name])

    # reconcile
    @property
    def reconcile(self) -> Dict[str, Any]:
        rc = _section(self.raw, "reconcile")
        return {
            "state": str(rc.get("state", "ACTIVE")),
            "start_date_before": str(rc.get("start_date_before", "now-3M")),
            "min_partition_id": int(rc.get("min_partition_id", 35)),
            "page_size": int(rc.get("page_size", 1000)),
            "keep_alive": str(rc.get("keep_alive", "60s")),
        }

    # mutation
    @property
    def mutation_batch_size(self) -> int:
        return int(_section(self.raw, "mutation").get("batch_size", 1000))

    @property
    def mutation_end_date(self) -> str:
        end_date = _section(self.raw, "mutation").get("end_date")
        if not end_date:
            raise ConfigError("'mutation.end_date' is required (e.g. 2024-08-26T12:00:00.000+0000)")
        return str(end_date)

    # dispatch
    @property
    def dispatch_command(self) -> List[str]:
        argv = _section(self.raw, "dispatch").get("command") or ["zbctl", "--insecure", "cancel", "instance", "{key}"]
        return [str(a) for a in argv]

    @property
    def dispatch_workers(self) -> int:
        return int(_section(self.raw, "dispatch").get("workers", 10))

    @property
    def dispatch_max_attempts(self) -> int:
        return int(_section(self.raw, "dispatch").get("max_attempts", 3))

    @property
    def dispatch_retry_backoff_s(self) -> float:
        return float(_section(self.raw, "dispatch").get("retry_backoff_s", 0.0))


def load_config(path: Path) -> RecoveryConfig:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML at {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config at {path} must be a mapping at the top level")
    # every command depends on the lost ranges; fail fast
    parse_lost_ranges(data.get("lost_ranges"))
    return RecoveryConfig(raw=data)
