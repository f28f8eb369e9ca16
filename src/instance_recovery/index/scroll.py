from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from rich.markup import escape

from .connector import response_field

console = Console()

PageHandler = Callable[[List[Dict[str, Any]]], Optional[bool]]


def clear_scroll(client: Any, scroll_id: Optional[str]) -> None:
    """Release a server-side scroll. Failures are reported, never raised."""
    if not scroll_id:
        return
    try:
        client.clear_scroll(scroll_id=scroll_id)
    except Exception as e:
        console.print(f"[yellow]Error occurred when clearing the scroll with id {escape(f'[{scroll_id}]')}:[/yellow] {e}")


def scroll(
    client: Any,
    index: str,
    body: Dict[str, Any],
    on_page: PageHandler,
    keep_alive: str = "60s",
) -> int:
    """
    Page through all hits of a search with the scroll API.

    ``body`` holds the search keyword arguments (query, sort, size, ...).
    ``on_page`` is called with the hits of each non-empty page, strictly one
    page after another; returning ``False`` stops early. Every continuation
    request renews ``keep_alive``. The scroll is cleared exactly once, whether
    iteration is exhausted, stopped or interrupted by an error.
    Returns the number of hits handed to ``on_page``.
    """
    scroll_id: Optional[str] = None
    total = 0
    try:
        response = client.search(index=index, scroll=keep_alive, **body)
        scroll_id = response_field(response, "_scroll_id")
        hits = response["hits"]["hits"]
        while hits:
            total += len(hits)
            if on_page(hits) is False:
                break
            response = client.scroll(scroll_id=scroll_id, scroll=keep_alive)
            scroll_id = response_field(response, "_scroll_id") or scroll_id
            hits = response["hits"]["hits"]
    finally:
        clear_scroll(client, scroll_id)
    return total
