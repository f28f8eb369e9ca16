from __future__ import annotations

from typing import Iterable, Iterator, Sequence

from ..schemas.records import LostRange


def is_affected(key: int, ranges: Sequence[LostRange]) -> bool:
    """True iff ``key`` lies in at least one lost range (bounds inclusive)."""
    return any(r.start <= key <= r.end for r in ranges)


def filter_affected(keys: Iterable[int], ranges: Sequence[LostRange]) -> Iterator[int]:
    """Lazily keep the keys that fall into a lost range, in encounter order."""
    for key in keys:
        if is_affected(key, ranges):
            yield key
