from __future__ import annotations

import json
import os
from contextlib import contextmanager
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import IO, Any, Dict, Iterable, Iterator, List


@contextmanager
def atomic_writer(path: Path) -> Iterator[IO[str]]:
    """
    Open a temp file in the target's directory for writing; it replaces
    ``path`` when the block completes and is removed if the block raises.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with NamedTemporaryFile("w", encoding="utf-8", dir=path.parent, delete=False) as tmp:
        tmp_path = Path(tmp.name)
        try:
            yield tmp
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    os.replace(tmp_path, path)


def write_json(path: Path, obj: Dict[str, Any] | List[Any]) -> None:
    """
    Pretty-print JSON to UTF-8 file with best-effort atomic write:
    write to temp file in same directory, then replace.
    """
    with atomic_writer(path) as tmp:
        json.dump(obj, tmp, ensure_ascii=False, indent=2)
        tmp.write("\n")


def read_json(path: Path) -> Any:
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def write_jsonl(path: Path, items: Iterable[Dict[str, Any]]) -> int:
    """
    Write an iterable of dicts to a JSON Lines file with best-effort atomic write.
    Returns the number of lines written.
    """
    count = 0
    with atomic_writer(path) as tmp:
        for item in items:
            json.dump(item, tmp, ensure_ascii=False)
            tmp.write("\n")
            count += 1
    return count


def read_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    """
    Stream JSON objects from a JSON Lines file.
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            yield json.loads(line)
