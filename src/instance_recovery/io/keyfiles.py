from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator, List

from ..utils.json_utils import atomic_writer, write_json


def read_keys(path: Path) -> Iterator[int]:
    """
    Stream process instance keys from a line-delimited file (one decimal key per line).
    Blank lines are skipped; anything else that is not an integer raises ValueError.
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield int(line)
            except ValueError as e:
                raise ValueError(f"{path}:{lineno}: not a process instance key: {line!r}") from e


def load_keys(path: Path) -> List[int]:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Key file not found: {path}")
    return list(read_keys(path))


def write_keys(path: Path, keys: Iterable[int]) -> int:
    """Atomically write keys one per line; returns the number written."""
    count = 0
    with atomic_writer(path) as tmp:
        for key in keys:
            tmp.write(f"{int(key)}\n")
            count += 1
    return count


def write_key_set(path: Path, keys: List[int]) -> List[Path]:
    """
    Persist a key list twice: line-delimited at ``path`` and as a JSON array at
    ``path`` + ".json". Returns both paths.
    """
    path = Path(path)
    json_path = path.with_name(path.name + ".json")
    write_json(json_path, [int(k) for k in keys])
    write_keys(path, keys)
    return [path, json_path]
