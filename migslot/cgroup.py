"""cgroup v2 cpuset groups backing each slot.

Layout (defaults)::

    /sys/fs/cgroup/mig/          shared parent, initialised once by `migslot setup`
    /sys/fs/cgroup/mig/mig0/     slot 0: cpuset.mems=0  cpuset.cpus=0-9
    /sys/fs/cgroup/mig/mig1/     slot 1: cpuset.mems=1  cpuset.cpus=10-19
    ...

Per-slot operations only ever write inside the slot's own directory, so
concurrent provisioning or launches on different slots cannot disturb each
other. The parent is touched only by ``init_parent``.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from migslot.constants import (
    CGROUP_CONTROLLERS,
    CGROUP_PROCS,
    CGROUP_ROOT,
    CGROUP_TASKS_LEGACY,
    CPUSET_CPUS,
    CPUSET_CPUS_EFFECTIVE,
    CPUSET_MEMS,
    CPUSET_MEMS_EFFECTIVE,
    DEFAULT_CGROUP_BASE,
    DEFAULT_CGROUP_PREFIX,
    SUBTREE_CONTROL,
)
from migslot.errors import (
    CgroupMissingError,
    CgroupWriteError,
    IsolationMismatchError,
    MigslotError,
    PreconditionError,
)
from migslot.partition import Slot

log = logger.bind(component="cgroup")


def parse_cpu_list(text: str) -> frozenset[int]:
    """Parse kernel list notation ("0-9,12,14-15") into a set of ids.

    Raises:
        ValueError: If the text is not valid list notation.
    """
    ids: set[int] = set()
    for part in text.strip().split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            lo, hi = part.split("-", 1)
            start, end = int(lo), int(hi)
            if end < start:
                raise ValueError(f"Invalid range {part!r}")
            ids.update(range(start, end + 1))
        else:
            ids.add(int(part))
    return frozenset(ids)


def _same_list(expected: str, actual: str | None) -> bool:
    if actual is None:
        return False
    try:
        return parse_cpu_list(expected) == parse_cpu_list(actual)
    except ValueError:
        return False


def _read(path: Path) -> str | None:
    try:
        return path.read_text().strip()
    except OSError:
        return None


def _write(path: Path, value: str) -> None:
    try:
        with path.open("w") as f:
            f.write(value)
    except OSError as e:
        raise CgroupWriteError(str(path), value, e.strerror or str(e)) from e


def write_cpuset(path: Path, mems: str, cpus: str) -> None:
    """Apply a cpuset to one group: ``cpuset.mems`` first, then ``cpuset.cpus``.

    The kernel rejects a cpus write into a group whose mems are still empty,
    and changing mems can fail once narrower children exist, so the order is
    fixed here rather than left to callers.
    """
    _write(path / CPUSET_MEMS, mems)
    _write(path / CPUSET_CPUS, cpus)


@dataclass(frozen=True, slots=True)
class CgroupState:
    """Observed state of one slot's cgroup.

    Attributes:
        path: Group directory.
        exists: Whether the directory exists.
        expected_cpus: Core range from the partition table.
        expected_mems: Memory domain from the partition table.
        effective_cpus: Kernel-reported effective cpus (None if unreadable).
        effective_mems: Kernel-reported effective mems (None if unreadable).
    """

    path: Path
    exists: bool
    expected_cpus: str
    expected_mems: str
    effective_cpus: str | None = None
    effective_mems: str | None = None

    @property
    def cpus_ok(self) -> bool:
        return _same_list(self.expected_cpus, self.effective_cpus)

    @property
    def mems_ok(self) -> bool:
        return _same_list(self.expected_mems, self.effective_mems)

    @property
    def ok(self) -> bool:
        return self.exists and self.cpus_ok and self.mems_ok


@dataclass(frozen=True, slots=True)
class ProvisionFailure:
    slot: int
    path: Path
    reason: str


@dataclass(slots=True)
class ProvisionReport:
    """Outcome of provisioning several slots; one failure never stops the rest."""

    created: list[CgroupState] = field(default_factory=list)
    failures: list[ProvisionFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def mismatched(self) -> list[CgroupState]:
        """Groups that were written but do not match the partition table."""
        return [s for s in self.created if not s.ok]

    @property
    def ok(self) -> bool:
        return not self.failures and not self.mismatched


@dataclass(frozen=True, slots=True)
class CgroupManager:
    """Creates, verifies and populates per-slot cpuset groups."""

    base: Path = Path(DEFAULT_CGROUP_BASE)
    prefix: str = DEFAULT_CGROUP_PREFIX
    root: Path = Path(CGROUP_ROOT)

    def path_for(self, slot: Slot | int) -> Path:
        index = slot if isinstance(slot, int) else slot.index
        return self.base / f"{self.prefix}{index}"

    def relative_path(self, slot: Slot | int) -> str:
        """Group path relative to the cgroup mount, as cgexec expects it."""
        path = self.path_for(slot)
        try:
            return "/" + str(path.relative_to(self.root))
        except ValueError:
            return str(path)

    def exists(self, slot: Slot | int) -> bool:
        return self.path_for(slot).is_dir()

    # -------------------------------------------------------------------------
    # One-time parent initialisation
    # -------------------------------------------------------------------------

    def is_v2(self) -> bool:
        return (self.root / CGROUP_CONTROLLERS).is_file()

    def init_parent(self, total_cores: int) -> list[str]:
        """Prepare the shared parent group. Run once per node session.

        Enables the cpuset controller from the mount root down to the base,
        then gives the base every memory node the root has and every core of
        the node.

        Returns:
            Warnings for best-effort steps that did not apply.

        Raises:
            PreconditionError: If cgroup v2 is not mounted at root, or the
                base group cannot be created.
            CgroupWriteError: If the base cpuset cannot be written.
        """
        if not self.is_v2():
            raise PreconditionError(f"cgroup v2 not detected at {self.root}")

        warnings: list[str] = []
        try:
            self.base.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PreconditionError(
                f"Cannot create cgroup {self.base}: {e.strerror or e} (setup needs root)"
            ) from e

        chain = [self.root]
        try:
            rel = self.base.relative_to(self.root)
            current = self.root
            for part in rel.parts:
                current = current / part
                chain.append(current)
        except ValueError:
            chain.append(self.base)

        for group in chain:
            control = group / SUBTREE_CONTROL
            if not control.exists():
                continue
            try:
                _write(control, "+cpuset")
            except CgroupWriteError as e:
                warnings.append(str(e))
                log.warning("Could not enable cpuset in {path}: {err}", path=group, err=e.reason)

        mems = _read(self.root / CPUSET_MEMS_EFFECTIVE) or "0"
        write_cpuset(self.base, mems, f"0-{total_cores - 1}")
        log.info("Initialised parent {path} (mems={mems}, cpus=0-{last})",
                 path=self.base, mems=mems, last=total_cores - 1)
        return warnings

    # -------------------------------------------------------------------------
    # Per-slot operations
    # -------------------------------------------------------------------------

    def verify(self, slot: Slot) -> CgroupState:
        """Read-only check of a slot's group against the partition table."""
        path = self.path_for(slot)
        expected_cpus = slot.cores.cpulist
        expected_mems = slot.memory_domain

        if not path.is_dir():
            return CgroupState(path, False, expected_cpus, expected_mems)

        effective_cpus = _read(path / CPUSET_CPUS_EFFECTIVE)
        if effective_cpus is None:
            effective_cpus = _read(path / CPUSET_CPUS)
        effective_mems = _read(path / CPUSET_MEMS_EFFECTIVE)
        if effective_mems is None:
            effective_mems = _read(path / CPUSET_MEMS)

        return CgroupState(
            path=path,
            exists=True,
            expected_cpus=expected_cpus,
            expected_mems=expected_mems,
            effective_cpus=effective_cpus,
            effective_mems=effective_mems,
        )

    def require(self, slot: Slot) -> CgroupState:
        """Verify and raise on any deviation. Never repairs.

        Raises:
            CgroupMissingError: If the group does not exist.
            IsolationMismatchError: If effective cpus or mems differ.
        """
        state = self.verify(slot)
        if not state.exists:
            raise CgroupMissingError(str(state.path))
        if not state.ok:
            raise IsolationMismatchError(
                str(state.path),
                state.expected_cpus,
                state.effective_cpus or "<unreadable>",
                state.expected_mems,
                state.effective_mems or "<unreadable>",
            )
        return state

    def create(self, slot: Slot) -> tuple[CgroupState, list[str]]:
        """Create or re-apply a slot's group. Safe to repeat and to race.

        Returns:
            The verified state and any warnings (e.g. mems fallback).

        Raises:
            CgroupWriteError: If the core range cannot be applied.
        """
        warnings: list[str] = []
        current = self.verify(slot)
        if current.ok:
            log.debug("Cgroup {path} already matches", path=current.path)
            return current, warnings

        path = current.path
        path.mkdir(parents=True, exist_ok=True)

        try:
            write_cpuset(path, slot.memory_domain, slot.cores.cpulist)
        except CgroupWriteError as e:
            if not e.path.endswith(CPUSET_MEMS):
                raise
            parent_mems = _read(self.base / CPUSET_MEMS) or "0"
            msg = (f"slot {slot.index}: memory node {slot.memory_domain} rejected "
                   f"({e.reason}); using parent mems {parent_mems}")
            warnings.append(msg)
            log.warning(msg)
            write_cpuset(path, parent_mems, slot.cores.cpulist)

        state = self.verify(slot)
        log.info("Cgroup {path}: cpus={cpus} mems={mems}",
                 path=path, cpus=state.effective_cpus, mems=state.effective_mems)
        return state, warnings

    def create_all(self, slots: Iterable[Slot]) -> ProvisionReport:
        """Provision every slot, collecting failures instead of stopping."""
        report = ProvisionReport()
        for slot in slots:
            try:
                state, warnings = self.create(slot)
            except (MigslotError, OSError) as e:
                reason = str(e)
                log.error("Slot {idx} provisioning failed: {reason}", idx=slot.index, reason=reason)
                report.failures.append(ProvisionFailure(slot.index, self.path_for(slot), reason))
                continue
            report.created.append(state)
            report.warnings.extend(warnings)
        return report

    # -------------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------------

    def members(self, slot: Slot | int) -> tuple[int, ...]:
        """PIDs currently listed in the slot's membership file."""
        text = _read(self.path_for(slot) / CGROUP_PROCS)
        if not text:
            return ()
        return tuple(int(line) for line in text.split() if line.strip().isdigit())

    def attach(self, slot: Slot | int, pid: int) -> Path:
        """Move one PID into the slot's group (one PID per write).

        Raises:
            OSError: If neither membership file accepts the write.
        """
        path = self.path_for(slot)
        procs = path / CGROUP_PROCS
        target = procs if procs.exists() else path / CGROUP_TASKS_LEGACY
        if not target.exists():
            raise FileNotFoundError(f"No membership file in {path}")
        with target.open("a") as f:
            f.write(f"{pid}\n")
        return target
