from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest


def keys_in_query(query: Dict[str, Any]) -> List[int]:
    """Pull the processInstanceKey terms filter out of a (possibly bool) query."""
    clauses = query["bool"]["must"] if "bool" in query else [query]
    for clause in clauses:
        if "terms" in clause:
            return list(clause["terms"]["processInstanceKey"])
    raise AssertionError(f"no terms filter in {query}")


class FakeIndexClient:
    """In-memory stand-in for the Elasticsearch client methods the recovery uses."""

    def __init__(
        self,
        pages: Optional[List[List[int]]] = None,
        updated: Optional[Dict[str, int]] = None,
        fail_on_call: Optional[int] = None,
        clear_error: Optional[Exception] = None,
    ) -> None:
        self.pages = list(pages or [])
        self.updated = updated or {}
        self.fail_on_call = fail_on_call
        self.clear_error = clear_error
        self.search_calls: List[Dict[str, Any]] = []
        self.scroll_calls: List[Dict[str, Any]] = []
        self.cleared: List[str] = []
        self.mutations: List[Dict[str, Any]] = []
        self._page = 0

    # search
    def _page_response(self) -> Dict[str, Any]:
        hits = self.pages[self._page] if self._page < len(self.pages) else []
        self._page += 1
        return {"_scroll_id": f"scroll-{self._page}", "hits": {"hits": [{"_id": str(k)} for k in hits]}}

    def search(self, **kwargs: Any) -> Dict[str, Any]:
        self.search_calls.append(kwargs)
        return self._page_response()

    def scroll(self, **kwargs: Any) -> Dict[str, Any]:
        self.scroll_calls.append(kwargs)
        return self._page_response()

    def clear_scroll(self, scroll_id: str) -> Dict[str, Any]:
        self.cleared.append(scroll_id)
        if self.clear_error is not None:
            raise self.clear_error
        return {"succeeded": True}

    # mutations
    def _mutate(self, kind: str, **kwargs: Any) -> Dict[str, Any]:
        call_no = len(self.mutations) + 1
        self.mutations.append({"kind": kind, **kwargs})
        if self.fail_on_call == call_no:
            raise ConnectionError("connection reset by peer")
        keys = keys_in_query(kwargs["query"])
        count = self.updated.get(kwargs["index"], len(keys))
        if kind == "delete":
            return {"deleted": count, "version_conflicts": 0, "failures": []}
        return {"updated": count, "version_conflicts": 0, "failures": []}

    def update_by_query(self, **kwargs: Any) -> Dict[str, Any]:
        return self._mutate("update", **kwargs)

    def delete_by_query(self, **kwargs: Any) -> Dict[str, Any]:
        return self._mutate("delete", **kwargs)

    def close(self) -> None:
        pass


@pytest.fixture
def fake_client_factory():
    return FakeIndexClient
