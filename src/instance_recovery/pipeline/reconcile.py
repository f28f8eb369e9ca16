from __future__ import annotations

from typing import Any, Collection, Dict, List

from rich.console import Console

from ..index.queries import join_with_and, range_query, term
from ..index.scroll import scroll

console = Console()


def build_candidate_search(
    state: str = "ACTIVE",
    start_date_before: str = "now-3M",
    min_partition_id: int = 35,
    page_size: int = 1000,
) -> Dict[str, Any]:
    """Search kwargs for old top-level process instances in the given state, keys ascending."""
    return {
        "query": join_with_and(
            term("joinRelation", "processInstance"),
            term("state", state),
            range_query("startDate", lt=start_date_before),
            range_query("partitionId", gte=min_partition_id),
        ),
        "source": False,
        "size": page_size,
        "sort": [{"key": {"order": "asc"}}],
    }


def select_keys_to_cancel(
    client: Any,
    index: str,
    trusted_keys: Collection[int],
    settings: Dict[str, Any],
) -> List[int]:
    """
    Page through candidate process instances in ``index`` and keep those whose
    key is not in ``trusted_keys``. Order follows the index sort (key ascending).
    """
    trusted = trusted_keys if isinstance(trusted_keys, (set, frozenset)) else set(trusted_keys)
    body = build_candidate_search(
        state=settings.get("state", "ACTIVE"),
        start_date_before=settings.get("start_date_before", "now-3M"),
        min_partition_id=int(settings.get("min_partition_id", 35)),
        page_size=int(settings.get("page_size", 1000)),
    )
    selected: List[int] = []

    def on_page(hits: List[Dict[str, Any]]) -> None:
        keys = [int(hit["_id"]) for hit in hits]
        missing = [k for k in keys if k not in trusted]
        if missing:
            console.print(f"[cyan]Keys for cancellation:[/cyan] {missing}")
        selected.extend(missing)

    scanned = scroll(client, index, body, on_page, keep_alive=settings.get("keep_alive", "60s"))
    console.print(
        f"[green]Reconciliation complete[/green]: scanned={scanned} missing_in_snapshots={len(selected)}"
    )
    return selected
