from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from elasticsearch import ApiError, TransportError
from rich.console import Console

from ..index.connector import response_field
from ..index.queries import Query, join_with_and, painless, term, terms
from .projection import iter_batches

console = Console()

KEY_FIELD = "processInstanceKey"

_CLOSE_SCRIPT = (
    "ctx._source.{field} = params.state; "
    "ctx._source.incident = false; "
    "ctx._source.endDate = params.endDate;"
)


class BulkMutationError(Exception):
    def __init__(self, batch_no: int, operation: str, keys: Sequence[int], cause: Exception) -> None:
        self.batch_no = batch_no
        self.operation = operation
        self.keys = list(keys)
        super().__init__(f"Batch {batch_no} failed during '{operation}' ({len(self.keys)} keys): {cause}")


@dataclass(frozen=True)
class MutationOperation:
    name: str
    index: str
    filters: Tuple[Query, ...] = ()
    # None means delete-by-query
    script: Optional[Dict[str, Any]] = None
    # warn when fewer documents than submitted keys were updated
    expect_one_per_key: bool = False

    def query_for(self, keys: Sequence[int]) -> Query:
        return join_with_and(*self.filters, terms(KEY_FIELD, keys))


def build_operations(indices: Mapping[str, str], end_date: str) -> List[MutationOperation]:
    """
    The five per-batch corrections, in application order: cancel process
    instances, terminate active flow nodes in the list view, terminate active
    flow node instances, resolve active incidents, drop post-importer queue entries.
    """
    return [
        MutationOperation(
            name="cancel_process_instances",
            index=indices["list_view"],
            filters=(term("joinRelation", "processInstance"),),
            script=painless(_CLOSE_SCRIPT.format(field="state"), state="CANCELED", endDate=end_date),
            expect_one_per_key=True,
        ),
        MutationOperation(
            name="terminate_list_view_flow_nodes",
            index=indices["list_view"],
            filters=(term("joinRelation", "activity"), term("activityState", "ACTIVE")),
            script=painless(_CLOSE_SCRIPT.format(field="activityState"), state="TERMINATED", endDate=end_date),
        ),
        MutationOperation(
            name="terminate_flow_node_instances",
            index=indices["flow_node_instance"],
            filters=(term("state", "ACTIVE"),),
            script=painless(_CLOSE_SCRIPT.format(field="state"), state="TERMINATED", endDate=end_date),
        ),
        MutationOperation(
            name="resolve_incidents",
            index=indices["incident"],
            filters=(term("state", "ACTIVE"),),
            script=painless("ctx._source.state = params.state;", state="RESOLVED"),
        ),
        MutationOperation(
            name="delete_post_importer_queue",
            index=indices["post_importer_queue"],
        ),
    ]


@dataclass
class MutationReport:
    batches: int = 0
    keys_submitted: int = 0
    totals: Dict[str, Dict[str, int]] = field(default_factory=dict)
    # batches where fewer process instances were cancelled than submitted
    partial_batches: List[List[int]] = field(default_factory=list)

    def add(self, operation: str, counts: Dict[str, int]) -> None:
        bucket = self.totals.setdefault(operation, {})
        for k, v in counts.items():
            bucket[k] = bucket.get(k, 0) + v


class BulkMutationEngine:
    def __init__(self, client: Any, operations: Sequence[MutationOperation], batch_size: int = 1000) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.client = client
        self.operations = list(operations)
        self.batch_size = batch_size

    def _execute(self, op: MutationOperation, keys: Sequence[int]) -> Any:
        if op.script is None:
            return self.client.delete_by_query(index=op.index, query=op.query_for(keys), conflicts="proceed")
        return self.client.update_by_query(
            index=op.index, query=op.query_for(keys), script=op.script, conflicts="proceed"
        )

    def apply_batch(self, batch_no: int, keys: Sequence[int], report: MutationReport) -> None:
        console.print(f"[cyan]Batch {batch_no}[/cyan]: processing process instances with keys: {list(keys)}")
        for op in self.operations:
            try:
                response = self._execute(op, keys)
            except (ApiError, TransportError, OSError) as e:
                raise BulkMutationError(batch_no, op.name, keys, e) from e

            counts = {
                "updated": int(response_field(response, "updated", 0)),
                "deleted": int(response_field(response, "deleted", 0)),
                "version_conflicts": int(response_field(response, "version_conflicts", 0)),
            }
            report.add(op.name, counts)

            failures = response_field(response, "failures", [])
            if failures:
                console.print(
                    f"[yellow]{op.name}: {len(failures)} document failures in batch {batch_no}.[/yellow]"
                )
            if op.expect_one_per_key and counts["updated"] < len(keys):
                console.print(
                    f"[yellow]Not all process instances were updated[/yellow] "
                    f"(batch {batch_no}, updated={counts['updated']}/{len(keys)}). Keys: {list(keys)}"
                )
                report.partial_batches.append(list(keys))
            elif counts["updated"] or counts["deleted"]:
                changed = counts["updated"] or counts["deleted"]
                console.print(f"{op.name}: {changed} documents changed.")

    def apply(self, keys: Sequence[int]) -> MutationReport:
        """
        Apply every operation to each batch of keys in turn. A transport
        failure raises BulkMutationError; batches already applied stay applied.
        """
        report = MutationReport()
        for batch_no, batch in enumerate(iter_batches(keys, self.batch_size), start=1):
            self.apply_batch(batch_no, batch, report)
            report.batches += 1
            report.keys_submitted += len(batch)
        console.print(
            f"[green]Bulk mutation complete[/green]: batches={report.batches} "
            f"keys={report.keys_submitted} partial_batches={len(report.partial_batches)}"
        )
        return report
