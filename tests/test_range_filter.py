from __future__ import annotations

from instance_recovery.pipeline.range_filter import filter_affected, is_affected
from instance_recovery.schemas.records import LostRange


def test_example_scenario():
    ranges = [LostRange(start=100, end=200)]
    assert list(filter_affected([50, 150, 200, 201], ranges)) == [150, 200]


def test_bounds_are_inclusive():
    ranges = [LostRange(start=100, end=200)]
    assert is_affected(100, ranges)
    assert is_affected(200, ranges)
    assert not is_affected(99, ranges)
    assert not is_affected(201, ranges)


def test_any_of_several_ranges():
    ranges = [LostRange(start=10, end=20), LostRange(start=1000, end=1000)]
    assert is_affected(15, ranges)
    assert is_affected(1000, ranges)
    assert not is_affected(500, ranges)


def test_keeps_encounter_order_and_is_lazy():
    ranges = [LostRange(start=0, end=10)]

    def keys():
        yield 7
        yield 3
        yield 99
        raise AssertionError("consumed past what was asked for")

    it = filter_affected(keys(), ranges)
    assert next(it) == 7
    assert next(it) == 3


def test_large_keys():
    ranges = [LostRange(start=78812994103625574, end=78812994150953317)]
    assert is_affected(78812994103625574, ranges)
    assert not is_affected(78812994150953318, ranges)
