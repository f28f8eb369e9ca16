from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Protocol, Sequence, Tuple

from rich.console import Console

from ..utils.commands import CommandFailedError, render_argv, stream_stdout

console = Console()

PROCESS_INSTANCES = "process_instances"
VARIABLES = "variables"
FLOW_NODE_INSTANCES = "flow_node_instances"
KINDS: Tuple[str, ...] = (PROCESS_INSTANCES, VARIABLES, FLOW_NODE_INSTANCES)

# Failures of these streams are reported and the traversal moves on.
_TOLERATED_KINDS = {PROCESS_INSTANCES, FLOW_NODE_INSTANCES}


class SnapshotExtractionError(Exception):
    pass


class SnapshotReader(Protocol):
    def stream(self, kind: str, snapshot_path: Path) -> Iterator[str]:
        """Yield the raw output lines of one column family dump for a snapshot."""
        ...


@dataclass
class CommandSnapshotReader:
    """Runs the configured dump command (``{snapshot}`` placeholder) per kind."""

    commands: Mapping[str, Sequence[str]]

    def stream(self, kind: str, snapshot_path: Path) -> Iterator[str]:
        template = self.commands.get(kind)
        if not template:
            raise KeyError(f"No extract command configured for '{kind}'")
        argv = render_argv(template, snapshot=str(snapshot_path))
        return stream_stdout(argv)


@dataclass
class ExtractionFailure:
    kind: str
    snapshot: str
    error: str


@dataclass
class ExtractionResult:
    snapshots: List[str] = field(default_factory=list)
    lines_written: Dict[str, int] = field(default_factory=lambda: {k: 0 for k in KINDS})
    failures: List[ExtractionFailure] = field(default_factory=list)


def iter_snapshot_dirs(root: Path) -> Iterator[Tuple[str, Path]]:
    """
    Yield (partition, snapshot_dir) for every ``root/<partition>/snapshots/<generation>/``.
    Directories are visited in name order so repeated runs append in the same order.
    """
    root = Path(root)
    if not root.is_dir():
        raise FileNotFoundError(f"Snapshot root is not a directory: {root}")
    for partition in sorted(p for p in root.iterdir() if p.is_dir()):
        snapshots_dir = partition / "snapshots"
        if not snapshots_dir.is_dir():
            console.print(f"[yellow]Partition {partition.name} has no snapshots folder; skipping.[/yellow]")
            continue
        for snapshot in sorted(s for s in snapshots_dir.iterdir() if s.is_dir()):
            yield partition.name, snapshot


def clear_outputs(outputs: Mapping[str, Path]) -> None:
    for path in outputs.values():
        Path(path).unlink(missing_ok=True)


def _append_stream(lines: Iterator[str], path: Path) -> int:
    count = 0
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as out:
        for line in lines:
            out.write(line + "\n")
            count += 1
    return count


def extract_snapshots(
    root: Path,
    reader: SnapshotReader,
    outputs: Mapping[str, Path],
) -> ExtractionResult:
    """
    Dump process instance keys, variables and flow node instances of every
    snapshot under ``root`` and append them to ``outputs[kind]``.

    Outputs are appended to, never truncated: call clear_outputs first when
    re-running from scratch.
    """
    result = ExtractionResult()
    for partition, snapshot in iter_snapshot_dirs(root):
        console.print(f"[cyan]Partition[/cyan] {partition} [cyan]snapshot[/cyan] {snapshot.name}")
        result.snapshots.append(f"{partition}/{snapshot.name}")
        for kind in KINDS:
            try:
                written = _append_stream(reader.stream(kind, snapshot), Path(outputs[kind]))
            except (CommandFailedError, OSError) as e:
                if kind not in _TOLERATED_KINDS:
                    raise SnapshotExtractionError(
                        f"Extracting {kind} from {snapshot} failed: {e}"
                    ) from e
                console.print(f"[yellow]Extracting {kind} from {snapshot} failed:[/yellow] {e}")
                result.failures.append(ExtractionFailure(kind=kind, snapshot=str(snapshot), error=str(e)))
                continue
            result.lines_written[kind] += written
    console.print(
        f"[green]Extraction complete[/green]: snapshots={len(result.snapshots)} "
        f"lines={result.lines_written} failures={len(result.failures)}"
    )
    return result
