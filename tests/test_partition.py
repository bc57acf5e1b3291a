"""Tests for the partition table."""

from __future__ import annotations

import pytest

from migslot.constants import CommPolicy
from migslot.errors import ConfigurationError, InvalidSlotError, ResolutionError
from migslot.partition import CoreRange, PartitionPlan, resolve

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

GEOMETRIES = [
    (72, 7, 10),
    (72, 7, 9),
    (64, 8, 8),
    (16, 3, 5),
    (6, 3, 2),
    (1, 1, 1),
]


class TestCoreRange:
    def test_cpulist_range(self) -> None:
        assert CoreRange(30, 39).cpulist == "30-39"

    def test_cpulist_single(self) -> None:
        assert CoreRange(7, 7).cpulist == "7"

    def test_len_and_iter(self) -> None:
        r = CoreRange(10, 19)
        assert len(r) == 10
        assert list(r) == list(range(10, 20))

    def test_contains(self) -> None:
        r = CoreRange(10, 19)
        assert 10 in r
        assert 19 in r
        assert 20 not in r

    def test_overlaps(self) -> None:
        assert CoreRange(0, 9).overlaps(CoreRange(9, 12))
        assert not CoreRange(0, 9).overlaps(CoreRange(10, 19))

    def test_rejects_inverted(self) -> None:
        with pytest.raises(ValueError):
            CoreRange(5, 4)


class TestResolveReferenceNode:
    @pytest.mark.parametrize(
        ("index", "start", "end"),
        [(0, 0, 9), (3, 30, 39), (6, 60, 69)],
    )
    def test_blocks(self, index: int, start: int, end: int) -> None:
        slot = resolve(index, total_cores=72, slot_count=7, cores_per_slot=10)
        assert slot.cores == CoreRange(start, end)

    def test_trailing_cores_unused(self) -> None:
        plan = PartitionPlan(total_cores=72, slot_count=7, cores_per_slot=10)
        assert plan.unused_cores() == CoreRange(70, 71)
        assert all(70 not in s.cores and 71 not in s.cores for s in plan.slots())

    def test_memory_domain_defaults_to_index(self) -> None:
        slot = resolve(4, total_cores=72, slot_count=7, cores_per_slot=10)
        assert slot.memory_domain == "4"

    def test_memory_domain_override(self) -> None:
        domains = ("0", "0", "1", "1", "2", "2", "3")
        slot = resolve(3, 72, 7, 10, memory_domains=domains)
        assert slot.memory_domain == "1"

    def test_accelerator_not_bound(self) -> None:
        slot = resolve(0, 72, 7, 10)
        assert slot.accelerator_id is None
        assert slot.with_accelerator("MIG-x").accelerator_id == "MIG-x"


class TestResolveProperties:
    @pytest.mark.parametrize(("total", "count", "per"), GEOMETRIES)
    def test_ranges_disjoint_and_within_node(self, total: int, count: int, per: int) -> None:
        slots = [resolve(i, total, count, per) for i in range(count)]
        seen: set[int] = set()
        for slot in slots:
            cores = slot.cores.as_set()
            assert not cores & seen
            seen |= cores
        assert seen <= set(range(total))

    @pytest.mark.parametrize(("total", "count", "per"), GEOMETRIES)
    def test_deterministic(self, total: int, count: int, per: int) -> None:
        for i in range(count):
            assert resolve(i, total, count, per) == resolve(i, total, count, per)


class TestCommPolicy:
    def test_shared_uses_whole_block(self) -> None:
        slot = resolve(3, 72, 7, 10, policy=CommPolicy.SHARED)
        assert slot.layout.comm_core == 30
        assert slot.layout.workers == CoreRange(30, 39)
        assert slot.layout.worker_count == 10

    def test_reserved_skips_comm_core(self) -> None:
        slot = resolve(3, 72, 7, 10, policy="reserved")
        assert slot.layout.comm_core == 30
        assert slot.layout.workers == CoreRange(31, 39)
        assert slot.layout.worker_count == 9

    def test_reserved_single_core_fails(self) -> None:
        with pytest.raises(ConfigurationError):
            resolve(0, total_cores=8, slot_count=8, cores_per_slot=1, policy="reserved")

    def test_shared_single_core_allowed(self) -> None:
        slot = resolve(0, total_cores=8, slot_count=8, cores_per_slot=1)
        assert slot.layout.worker_count == 1


class TestResolveErrors:
    @pytest.mark.parametrize("index", [-1, 7, 100])
    def test_index_out_of_range(self, index: int) -> None:
        with pytest.raises(InvalidSlotError) as exc:
            resolve(index, 72, 7, 10)
        assert isinstance(exc.value, ResolutionError)
        assert "0..6" in str(exc.value)

    def test_block_past_last_core(self) -> None:
        with pytest.raises(ConfigurationError):
            resolve(7, total_cores=70, slot_count=8, cores_per_slot=10)

    def test_last_block_clamped(self) -> None:
        slot = resolve(7, total_cores=75, slot_count=8, cores_per_slot=10)
        assert slot.cores == CoreRange(70, 74)

    @pytest.mark.parametrize(("total", "count", "per"), [(0, 1, 1), (8, 0, 1), (8, 1, 0)])
    def test_invalid_geometry(self, total: int, count: int, per: int) -> None:
        with pytest.raises(ConfigurationError):
            resolve(0, total, count, per)

    def test_missing_memory_domain(self) -> None:
        with pytest.raises(ConfigurationError):
            resolve(3, 72, 7, 10, memory_domains=("0", "1"))


class TestPartitionPlan:
    def test_slots(self) -> None:
        plan = PartitionPlan(total_cores=72, slot_count=7, cores_per_slot=10)
        assert [s.index for s in plan.slots()] == list(range(7))

    def test_with_slot_count(self) -> None:
        plan = PartitionPlan(total_cores=72, slot_count=7, cores_per_slot=10)
        smaller = plan.with_slot_count(3)
        assert len(smaller.slots()) == 3
        assert smaller.unused_cores() == CoreRange(30, 71)

    def test_full_node_has_no_unused(self) -> None:
        plan = PartitionPlan(total_cores=70, slot_count=7, cores_per_slot=10)
        assert plan.unused_cores() is None
