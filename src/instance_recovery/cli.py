from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from rich.console import Console

from .config import DEFAULT_INDICES, ConfigError, RecoveryConfig, load_config
from .dispatch.cancel import CommandEntityRunner, dispatch_cancellations
from .extraction.snapshots import CommandSnapshotReader
from .index.connector import client_from_config, close_es_client
from .io.keyfiles import load_keys, write_keys
from .pipeline.mutations import BulkMutationEngine, build_operations
from .pipeline.range_filter import is_affected
from .pipeline.stages import (
    COMPUTED,
    SEARCH_STAGES,
    compute_index_cancellations,
    load_affected,
    load_index_cancellations,
    run_search_missing,
)
from .utils.json_utils import read_json, write_json
from .utils.time import utc_now_iso

load_dotenv()  # automatically load variables from .env if present
console = Console()


def _load_config_or_exit(config_path: Path) -> RecoveryConfig:
    try:
        return load_config(config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(2)
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        sys.exit(2)
    except Exception as e:  # unexpected
        console.print(f"[red]Unexpected error loading config:[/red] {e}")
        sys.exit(1)


def _record_run_meta(
    cfg: RecoveryConfig,
    command: str,
    counts: Dict[str, Any],
    output_files: List[Path],
    notes: str,
) -> None:
    """Merge this command's counts into <work_dir>/run_meta.json."""
    meta_path = cfg.work_dir / "run_meta.json"
    run_meta: Dict[str, Any] = {}
    if meta_path.exists():
        try:
            run_meta = read_json(meta_path)
        except ValueError:
            console.print(f"[yellow]Ignoring unreadable {meta_path}[/yellow]")
    commands = run_meta.setdefault("commands", {})
    commands[command] = {
        "finished_at": utc_now_iso(),
        "counts": counts,
        "output_files": [str(p) for p in output_files],
        "notes": notes,
    }
    run_meta["updated_at"] = utc_now_iso()
    write_json(meta_path, run_meta)


def cmd_search_missing(args: argparse.Namespace) -> int:
    cfg = _load_config_or_exit(Path(args.config))
    reader = CommandSnapshotReader(cfg.extract_commands)
    results = run_search_missing(cfg, reader, from_stage=args.from_stage, fresh=args.fresh)

    counts: Dict[str, Any] = {}
    output_files: List[Path] = []
    for name, stage in results.items():
        value = stage.value
        if name == "extract":
            counts["extract_lines"] = value.lines_written
            counts["extract_failures"] = len(value.failures)
        else:
            counts[name] = len(value)
        if stage.source == COMPUTED:
            output_files.extend(stage.paths)
        console.print(f"[bold]{name}:[/bold] {stage.source}")
    _record_run_meta(cfg, "search-missing", counts, output_files, f"from_stage={args.from_stage}")
    return 0


def cmd_cancel_in_index(args: argparse.Namespace) -> int:
    cfg = _load_config_or_exit(Path(args.config))
    indices = {name: cfg.index_name(name) for name in DEFAULT_INDICES}
    operations = build_operations(indices, cfg.mutation_end_date)

    client = client_from_config(cfg)
    try:
        stage = load_index_cancellations(cfg) if args.skip_search else compute_index_cancellations(cfg, client)
        console.print(f"[bold]Process instances to cancel in index:[/bold] {len(stage.value)} ({stage.source})")
        engine = BulkMutationEngine(client, operations, batch_size=cfg.mutation_batch_size)
        report = engine.apply(stage.value)
    finally:
        close_es_client(client)

    _record_run_meta(
        cfg,
        "cancel-in-index",
        {
            "keys": len(stage.value),
            "batches": report.batches,
            "partial_batches": len(report.partial_batches),
            "totals": report.totals,
        },
        stage.paths if stage.source == COMPUTED else [],
        f"keys {stage.source}",
    )
    return 0


def cmd_cancel_live(args: argparse.Namespace) -> int:
    cfg = _load_config_or_exit(Path(args.config))
    if args.input:
        source = Path(args.input)
        keys = load_keys(source)
    else:
        stage = load_affected(cfg)
        source, keys = stage.paths[0], stage.value
    console.print(f"[bold]Process instances to cancel in engine:[/bold] {len(keys)} from {source}")

    runner = CommandEntityRunner(cfg.dispatch_command)
    result = dispatch_cancellations(
        keys,
        runner,
        workers=cfg.dispatch_workers,
        max_attempts=cfg.dispatch_max_attempts,
        retry_backoff_s=cfg.dispatch_retry_backoff_s,
    )
    failed_path = source.with_name(source.name + ".failed")
    write_keys(failed_path, result.failed)
    if result.failed:
        console.print(f"[yellow]{len(result.failed)} keys failed; rerun with --input {failed_path}[/yellow]")

    _record_run_meta(
        cfg,
        "cancel-live",
        {"keys": len(keys), "cancelled": len(result.succeeded), "failed": len(result.failed)},
        [failed_path],
        f"input={source}",
    )
    return 0 if not result.failed else 3


def cmd_check_key(args: argparse.Namespace) -> int:
    cfg = _load_config_or_exit(Path(args.config))
    ranges = cfg.lost_ranges
    for key in args.keys:
        mark = "[red]affected[/red]" if is_affected(key, ranges) else "[green]not affected[/green]"
        console.print(f"{key}: {mark}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="instance-recovery",
        description="Reconcile process instances between engine snapshots and the search index.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_search = sub.add_parser(
        "search-missing", help="Extract snapshots and select affected instances, flow nodes and variables"
    )
    p_search.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p_search.add_argument(
        "--from-stage",
        choices=SEARCH_STAGES,
        default=SEARCH_STAGES[0],
        help="Start at this stage; earlier results are read from their files",
    )
    p_search.add_argument("--fresh", action="store_true", help="Delete raw dump files before extracting")
    p_search.set_defaults(func=cmd_search_missing)

    p_index = sub.add_parser(
        "cancel-in-index", help="Find active instances missing from snapshots and cancel them in the index"
    )
    p_index.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p_index.add_argument(
        "--skip-search", action="store_true", help="Reuse the key file from a previous search instead of querying"
    )
    p_index.set_defaults(func=cmd_cancel_in_index)

    p_live = sub.add_parser("cancel-live", help="Cancel affected instances one by one through the engine CLI")
    p_live.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p_live.add_argument("--input", type=str, help="Key file to use instead of the affected instances file")
    p_live.set_defaults(func=cmd_cancel_live)

    p_check = sub.add_parser("check-key", help="Tell whether keys fall into a lost range")
    p_check.add_argument("--config", type=str, default="config.yml", help="Path to config.yml")
    p_check.add_argument("keys", type=int, nargs="+", help="Process instance keys")
    p_check.set_defaults(func=cmd_check_key)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except SystemExit:
        raise
    except ConfigError as e:
        console.print(f"[red]Config error:[/red] {e}")
        return 2
    except Exception as e:
        console.print(f"[red]{args.command} failed:[/red] {e}")
        console.print_exception()
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
