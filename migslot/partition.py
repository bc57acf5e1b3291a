"""Partition table: slot index -> CPU block, memory domain and comm-core layout.

The table is a pure function of the node geometry. Slot ``i`` owns the
contiguous block ``[i * cores_per_slot, i * cores_per_slot + cores_per_slot - 1]``
clamped to the last core of the node. Cores past the last full block are never
handed out.

Examples:
    >>> slot = resolve(3, total_cores=72, slot_count=7, cores_per_slot=10)
    >>> slot.cores
    CoreRange(start=30, end=39)
    >>> slot.layout.worker_count
    10
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, replace

from migslot.constants import CommPolicy
from migslot.errors import ConfigurationError, InvalidSlotError


@dataclass(frozen=True, slots=True)
class CoreRange:
    """Inclusive range of logical CPU ids."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"Invalid core range {self.start}-{self.end}")

    def __len__(self) -> int:
        return self.end - self.start + 1

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))

    def __contains__(self, core: object) -> bool:
        return isinstance(core, int) and self.start <= core <= self.end

    def __str__(self) -> str:
        return self.cpulist

    @property
    def cpulist(self) -> str:
        """Kernel cpulist notation ("30-39", or "30" for a single core)."""
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"

    def overlaps(self, other: CoreRange) -> bool:
        return self.start <= other.end and other.start <= self.end

    def as_set(self) -> frozenset[int]:
        return frozenset(self)


@dataclass(frozen=True, slots=True)
class WorkerLayout:
    """Thread placement inside one slot.

    Attributes:
        comm_core: Core of the communication thread (always the first core).
        workers: Cores of the worker threads.
        worker_count: Number of worker threads.
        policy: Whether the comm core is shared with workers or reserved.
    """

    comm_core: int
    workers: CoreRange
    worker_count: int
    policy: CommPolicy


@dataclass(frozen=True, slots=True)
class Slot:
    """One isolated execution unit on the node.

    Derived on demand; never persisted.
    """

    index: int
    cores: CoreRange
    memory_domain: str
    layout: WorkerLayout
    accelerator_id: str | None = None

    def with_accelerator(self, accelerator_id: str) -> Slot:
        return replace(self, accelerator_id=accelerator_id)


def _layout(cores: CoreRange, policy: CommPolicy) -> WorkerLayout:
    if policy is CommPolicy.SHARED:
        return WorkerLayout(
            comm_core=cores.start,
            workers=cores,
            worker_count=len(cores),
            policy=policy,
        )
    if len(cores) <= 1:
        raise ConfigurationError(
            f"Block {cores} too small to reserve a comm core; "
            "use the 'shared' comm policy or more cores per slot"
        )
    return WorkerLayout(
        comm_core=cores.start,
        workers=CoreRange(cores.start + 1, cores.end),
        worker_count=len(cores) - 1,
        policy=policy,
    )


def resolve(
    slot_index: int,
    total_cores: int,
    slot_count: int,
    cores_per_slot: int,
    policy: CommPolicy | str = CommPolicy.SHARED,
    memory_domains: Sequence[str] | None = None,
) -> Slot:
    """Resolve a slot index to its physical partition.

    Args:
        slot_index: 0-based slot index.
        total_cores: Logical CPUs on the node (numbered 0..total_cores-1).
        slot_count: Number of slots the node is split into.
        cores_per_slot: Size of each slot's core block.
        policy: Comm-core policy ("shared" or "reserved").
        memory_domains: NUMA node per slot. Defaults to the slot index.

    Returns:
        Slot without an accelerator id bound.

    Raises:
        InvalidSlotError: If slot_index is outside [0, slot_count).
        ConfigurationError: If the geometry cannot produce the slot.
    """
    policy = CommPolicy(policy)

    if total_cores < 1 or slot_count < 1 or cores_per_slot < 1:
        raise ConfigurationError(
            f"Invalid geometry: total_cores={total_cores}, "
            f"slot_count={slot_count}, cores_per_slot={cores_per_slot}"
        )
    if policy is CommPolicy.RESERVED and cores_per_slot <= 1:
        raise ConfigurationError(
            f"cores_per_slot={cores_per_slot} too small to reserve a comm core"
        )
    if not 0 <= slot_index < slot_count:
        raise InvalidSlotError(slot_index, slot_count)

    start = slot_index * cores_per_slot
    if start >= total_cores:
        raise ConfigurationError(
            f"Slot {slot_index} starts at core {start}, beyond the node's "
            f"{total_cores} cores ({slot_count} x {cores_per_slot} does not fit)"
        )
    end = min(start + cores_per_slot - 1, total_cores - 1)
    cores = CoreRange(start, end)

    if memory_domains is None:
        domain = str(slot_index)
    elif slot_index < len(memory_domains):
        domain = str(memory_domains[slot_index])
    else:
        raise ConfigurationError(
            f"No memory domain configured for slot {slot_index} "
            f"({len(memory_domains)} domains given)"
        )

    return Slot(
        index=slot_index,
        cores=cores,
        memory_domain=domain,
        layout=_layout(cores, policy),
    )


@dataclass(frozen=True, slots=True)
class PartitionPlan:
    """Node geometry bound once, resolved per slot."""

    total_cores: int
    slot_count: int
    cores_per_slot: int
    policy: CommPolicy = CommPolicy.SHARED
    memory_domains: tuple[str, ...] | None = None

    def resolve(self, slot_index: int) -> Slot:
        return resolve(
            slot_index,
            self.total_cores,
            self.slot_count,
            self.cores_per_slot,
            self.policy,
            self.memory_domains,
        )

    def slots(self) -> tuple[Slot, ...]:
        return tuple(self.resolve(i) for i in range(self.slot_count))

    def unused_cores(self) -> CoreRange | None:
        """Trailing cores that belong to no slot."""
        used = min(self.slot_count * self.cores_per_slot, self.total_cores)
        if used >= self.total_cores:
            return None
        return CoreRange(used, self.total_cores - 1)

    def with_slot_count(self, slot_count: int) -> PartitionPlan:
        return replace(self, slot_count=slot_count)
