from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

Query = Dict[str, Any]


def term(field: str, value: Any) -> Query:
    return {"term": {field: value}}


def terms(field: str, values: Iterable[Any]) -> Query:
    return {"terms": {field: list(values)}}


def range_query(field: str, **bounds: Any) -> Query:
    """``range_query("startDate", lt="now-3M")``"""
    return {"range": {field: bounds}}


def join_with_and(*queries: Optional[Query]) -> Optional[Query]:
    """
    Combine queries with a bool/must; None entries are ignored.
    Returns None for no queries and the query itself for exactly one.
    """
    not_null = [q for q in queries if q is not None]
    if not not_null:
        return None
    if len(not_null) == 1:
        return not_null[0]
    return {"bool": {"must": not_null}}


def painless(source: str, **params: Any) -> Dict[str, Any]:
    script: Dict[str, Any] = {"source": source, "lang": "painless"}
    if params:
        script["params"] = params
    return script
