from __future__ import annotations

import base64
from concurrent.futures import ThreadPoolExecutor
from itertools import islice
from typing import Any, Collection, Dict, Iterable, Iterator, List, Tuple, TypeVar

from rich.console import Console

from ..schemas.records import FlowNodeRef, VariableRemoval

console = Console()

T = TypeVar("T")


def iter_batches(items: Iterable[T], size: int) -> Iterator[List[T]]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    it = iter(items)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


def scope_key_of(variable_key: str) -> str:
    """``"<scopeKey>:<name>"`` -> ``"<scopeKey>"``."""
    return str(variable_key).split(":", 1)[0]


def select_named_variables(records: Iterable[Dict[str, Any]], name: str) -> Iterator[Dict[str, Any]]:
    """Keep variable records keyed ``<digits>:<name>``."""
    for record in records:
        scope, sep, var_name = str(record.get("key", "")).partition(":")
        if sep and scope.isdigit() and var_name == name:
            yield record


def reduce_flow_node(record: Dict[str, Any]) -> FlowNodeRef:
    try:
        pi_key = record["value"]["elementRecord"]["processInstanceRecord"]["processInstanceKey"]
        key = record["key"]
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed flow node record (missing {e}): {str(record)[:200]}") from e
    return FlowNodeRef(key=str(key), process_instance_key=int(pi_key))


def _filter_chunk(chunk: List[FlowNodeRef], affected: Collection[int]) -> List[Tuple[str, int]]:
    return [(ref.key, ref.process_instance_key) for ref in chunk if ref.process_instance_key in affected]


def filter_flow_nodes(
    refs: Iterable[FlowNodeRef],
    affected: Collection[int],
    batch_size: int = 500_000,
    workers: int = 4,
) -> Dict[str, int]:
    """
    Build ``flow node key -> process instance key`` for flow nodes that belong to
    an affected process instance.

    ``refs`` is consumed in batches of ``batch_size``; each batch is split into
    chunks filtered on a thread pool. Chunks are merged in stream order and the
    first occurrence of a flow node key wins, so the result does not depend on
    batch size or worker count.
    """
    affected_set = affected if isinstance(affected, (set, frozenset)) else set(affected)
    workers = max(1, workers)
    mapping: Dict[str, int] = {}
    seen = 0
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for batch in iter_batches(refs, batch_size):
            chunk_size = max(1, -(-len(batch) // workers))
            chunks = [batch[i : i + chunk_size] for i in range(0, len(batch), chunk_size)]
            for kept in pool.map(lambda c: _filter_chunk(c, affected_set), chunks):
                for key, pi_key in kept:
                    mapping.setdefault(key, pi_key)
            seen += len(batch)
            console.print(f"[cyan]Flow nodes[/cyan]: {seen} scanned, {len(mapping)} retained")
    return mapping


def decode_value(value_base64: str) -> str:
    return base64.b64decode(value_base64, validate=True).decode("utf-8", errors="replace")


def join_variables(variables: Iterable[Dict[str, Any]], mapping: Dict[str, int]) -> List[VariableRemoval]:
    """
    Attach the owning process instance to each variable via its scope key.
    Variables whose scope is not in ``mapping`` are dropped.
    """
    joined: List[VariableRemoval] = []
    for record in variables:
        scope_key = scope_key_of(record.get("key", ""))
        pi_key = mapping.get(scope_key)
        if pi_key is None:
            continue
        value = record.get("value")
        if not isinstance(value, dict) or "value" not in value:
            raise ValueError(f"Malformed variable record {record.get('key')!r}: missing value payload")
        value_base64 = str(value["value"])
        joined.append(
            VariableRemoval(
                key=value.get("key", record.get("key")),
                process_instance_key=pi_key,
                flow_node_instance_key=scope_key,
                value_base64=value_base64,
                value=decode_value(value_base64),
            )
        )
    return joined
