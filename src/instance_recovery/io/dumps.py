from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterator

import ijson

_CHUNK_SIZE = 1 << 20

_CONTAINER_START = ("start_map", "start_array")
_CONTAINER_END = ("end_map", "end_array")


def iter_dump_records(path: str | Path) -> Iterator[Dict[str, Any]]:
    """
    Stream the records of a snapshot dump file.

    The dump tool prints one JSON document per invocation and the extractor
    appends the output of every snapshot to the same file, so a dump file is a
    sequence of concatenated documents. Records are yielded one at a time
    while the file is parsed; no document is held in memory as a whole.
    Rules per document:
      - If top-level is an object, its 'data' list holds the records
      - Else if top-level is itself a list, its items are the records (fallback)
      - Otherwise raise ValueError
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Snapshot dump not found at: {p}")

    with p.open("rb") as f:
        events = ijson.parse(f, buf_size=_CHUNK_SIZE, multiple_values=True, use_float=True)
        record_prefix = None
        has_data = False
        builder = None
        for prefix, event, value in events:
            if builder is not None:
                builder.event(event, value)
                if prefix == record_prefix and event in _CONTAINER_END:
                    yield builder.value
                    builder = None
                continue

            if prefix == record_prefix:
                if event in _CONTAINER_START:
                    builder = ijson.ObjectBuilder()
                    builder.event(event, value)
                elif event not in _CONTAINER_END:
                    yield value
                continue

            if prefix == "":
                if event == "start_map":
                    record_prefix, has_data = "data.item", False
                elif event == "start_array":
                    record_prefix = "item"
                elif event == "end_map":
                    if not has_data:
                        raise ValueError(f"{p}: dump document is an object but missing 'data' list at top level.")
                    record_prefix = None
                elif event == "end_array":
                    record_prefix = None
                elif event != "map_key":
                    raise ValueError(f"{p}: dump document should be either an object or an array at the top level.")
            elif prefix == "data" and record_prefix == "data.item":
                if event == "start_array":
                    has_data = True
                elif event != "end_array":
                    raise ValueError(f"{p}: 'data' in dump document is not a list.")
