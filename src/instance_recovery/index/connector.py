from __future__ import annotations

from typing import Any, Optional

from elasticsearch import Elasticsearch
from rich.console import Console

from ..config import RecoveryConfig

console = Console()


def create_es_client(
    url: str,
    username: Optional[str] = None,
    password: Optional[str] = None,
    request_timeout_s: float = 120,
) -> Elasticsearch:
    console.print(f"[cyan]Connecting to Elasticsearch at {url}...[/cyan]")
    basic_auth = (username, password or "") if username else None
    return Elasticsearch(url, basic_auth=basic_auth, request_timeout=request_timeout_s)


def client_from_config(cfg: RecoveryConfig) -> Elasticsearch:
    return create_es_client(
        cfg.index_url,
        username=cfg.index_username,
        password=cfg.index_password,
        request_timeout_s=cfg.index_request_timeout_s,
    )


def close_es_client(client: Optional[Elasticsearch]) -> None:
    if client is None:
        return
    try:
        client.close()
    except Exception as e:
        console.print(f"[red]Could not close Elasticsearch client:[/red] {e}")


def response_field(response: Any, name: str, default: Any = None) -> Any:
    """Read a top-level field from a client response (API response object or plain dict)."""
    try:
        value = response[name]
    except KeyError:
        return default
    return default if value is None else value
