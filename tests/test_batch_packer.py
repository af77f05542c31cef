"""Capacity-bounded batch packing"""

from decimal import Decimal

import pytest

from bundle_entries import DEFAULT_CAPACITY_GB, pack_batches, split_problematic
from conftest import make_entry


def _valid(*sizes):
    return [make_entry(f"02{index:08d}", size) for index, size in enumerate(sizes)]


def _sizes(batch):
    return [int(entry.allocation_gb) for entry in batch.entries]


def test_packs_largest_first_into_sequential_batches():
    batches = pack_batches(_valid(8, 8, 4, 1), capacity_gb=Decimal("10"))

    assert [_sizes(batch) for batch in batches] == [[8], [8], [4, 1]]
    assert [batch.total_gb for batch in batches] == [Decimal("8"), Decimal("8"), Decimal("5")]


def test_sorting_is_applied_before_packing():
    batches = pack_batches(_valid(1, 8, 4, 8), capacity_gb=Decimal("10"))
    assert [_sizes(batch) for batch in batches] == [[8], [8], [4, 1]]


def test_equal_sizes_keep_input_order():
    entries = _valid(5, 5, 5)
    batches = pack_batches(entries, capacity_gb=Decimal("10"))
    assert [entry.number for entry in batches[0].entries] == [entries[0].number, entries[1].number]


def test_unsorted_packing_keeps_input_order():
    batches = pack_batches(_valid(1, 8, 4, 8), capacity_gb=Decimal("10"), sort_before_packing=False)
    assert [_sizes(batch) for batch in batches] == [[1, 8], [4], [8]]


def test_oversized_entry_gets_its_own_batch():
    batches = pack_batches(_valid(15), capacity_gb=Decimal("10"))
    assert len(batches) == 1
    assert batches[0].total_gb == Decimal("15")


def test_oversized_entry_does_not_share_a_batch():
    batches = pack_batches(_valid(3, 15, 2), capacity_gb=Decimal("10"))
    assert [_sizes(batch) for batch in batches] == [[15], [3, 2]]


def test_problematic_entries_land_only_in_last_batch():
    problematic = [make_entry("12345", 3), make_entry("0200000000", 8, is_duplicate=True)]
    batches = pack_batches(_valid(8, 8, 4, 1), problematic, capacity_gb=Decimal("10"))

    assert [_sizes(batch) for batch in batches[:2]] == [[8], [8]]
    assert _sizes(batches[2]) == [4, 1, 3, 8]
    assert batches[2].total_gb == Decimal("16")


def test_problematic_only_input_makes_one_batch():
    problematic = [make_entry("12345", 3)]
    batches = pack_batches([], problematic, capacity_gb=Decimal("10"))
    assert len(batches) == 1
    assert batches[0].entries == problematic


def test_no_entries_no_batches():
    assert pack_batches([], [], capacity_gb=Decimal("10")) == []


def test_every_entry_is_packed_exactly_once():
    valid = _valid(700, 600, 500, 400, 300, 200, 100)
    problematic = [make_entry("12345", 50)]
    batches = pack_batches(valid, problematic, capacity_gb=DEFAULT_CAPACITY_GB)

    packed = [entry for batch in batches for entry in batch.entries]
    assert len(packed) == len(valid) + len(problematic)
    assert sum(batch.total_gb for batch in batches) == sum(entry.allocation_gb for entry in packed)
    for batch in batches[:-1]:
        assert batch.total_gb <= DEFAULT_CAPACITY_GB


@pytest.mark.parametrize("capacity", [Decimal("0"), Decimal("-1")])
def test_capacity_must_be_positive(capacity):
    with pytest.raises(ValueError):
        pack_batches(_valid(1), capacity_gb=capacity)


def test_split_problematic_preserves_order():
    entries = [make_entry("0200000000", 1), make_entry("12345", 2),
               make_entry("0201111111", 3), make_entry("0200000000", 4, is_duplicate=True)]
    valid, problematic = split_problematic(entries)
    assert _sizes_of(valid) == [1, 3]
    assert _sizes_of(problematic) == [2, 4]


def _sizes_of(entries):
    return [int(entry.allocation_gb) for entry in entries]
