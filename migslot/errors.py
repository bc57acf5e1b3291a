"""Error taxonomy for slot resolution and launch.

Every error carries the process exit code the CLI reports for it. Anything
raised by ``Orchestrator.launch`` is a ``LaunchError``.
"""

from __future__ import annotations

from migslot.constants import EXIT_FAILURE, EXIT_USAGE


class MigslotError(Exception):
    """Base class for all migslot errors."""

    exit_code: int = EXIT_FAILURE


class UsageError(MigslotError):
    """Bad or missing command-line arguments."""

    exit_code = EXIT_USAGE


class LaunchError(MigslotError):
    """A launch could not be completed; nothing is left running."""


class ConfigurationError(LaunchError):
    """Partition or node parameters are inconsistent."""


class DiscoveryError(LaunchError):
    """The accelerator topology tool could not be executed."""

    def __init__(self, command: tuple[str, ...] | list[str], reason: str) -> None:
        self.command = tuple(command)
        self.reason = reason
        super().__init__(f"Slice discovery failed ({' '.join(self.command)}): {reason}")


# =============================================================================
# Resolution
# =============================================================================


class ResolutionError(LaunchError):
    """A slot or accelerator selector could not be resolved."""


class InvalidSlotError(ResolutionError):
    def __init__(self, index: int, slot_count: int) -> None:
        self.index = index
        self.slot_count = slot_count
        super().__init__(
            f"Slot index {index} out of range (0..{slot_count - 1})"
        )


class AcceleratorNotFoundError(ResolutionError):
    """The selector does not name any discovered slice."""

    def __init__(self, selector: int | str, slices: tuple[str, ...]) -> None:
        self.selector = selector
        self.valid_range = (0, len(slices) - 1) if slices else None
        if not slices:
            msg = f"No accelerator slices found (selector {selector!r})"
        elif isinstance(selector, int):
            msg = f"Accelerator index {selector} out of range (0..{len(slices) - 1})"
        else:
            msg = f"Accelerator {selector!r} not among discovered slices"
        super().__init__(msg)


class AmbiguousSelectorError(ResolutionError):
    """The selector matches more than one slice."""


# =============================================================================
# Preconditions
# =============================================================================


class PreconditionError(LaunchError):
    """The node is not in a state that permits the launch."""


class CgroupMissingError(PreconditionError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Cgroup not found: {path} (run 'migslot setup' first)")


class IsolationMismatchError(PreconditionError):
    """A control group's effective cpuset differs from the partition table."""

    def __init__(
        self,
        path: str,
        expected_cpus: str,
        effective_cpus: str,
        expected_mems: str | None = None,
        effective_mems: str | None = None,
    ) -> None:
        self.path = path
        self.expected_cpus = expected_cpus
        self.effective_cpus = effective_cpus
        self.expected_mems = expected_mems
        self.effective_mems = effective_mems
        detail = f"cpus expected {expected_cpus}, effective {effective_cpus}"
        if expected_mems is not None and expected_mems != effective_mems:
            detail += f"; mems expected {expected_mems}, effective {effective_mems}"
        super().__init__(f"Cgroup {path} does not match partition: {detail}")


class CgroupWriteError(PreconditionError):
    """Writing a control file failed while provisioning a cgroup."""

    def __init__(self, path: str, value: str, reason: str) -> None:
        self.path = path
        self.value = value
        self.reason = reason
        super().__init__(f"Failed to write {value!r} to {path}: {reason}")


class AllocationRequiredError(PreconditionError):
    def __init__(self) -> None:
        super().__init__(
            "Not inside a scheduler allocation; use 'salloc' or disable the job-step launcher"
        )


class SlotBusyError(PreconditionError):
    def __init__(self, index: int, pid: int) -> None:
        self.index = index
        self.pid = pid
        super().__init__(f"Slot {index} already running PID {pid} (use --force to override)")


class TopologyDriftError(PreconditionError):
    """Slice ordering changed between two discoveries in one session."""

    def __init__(self, before: tuple[str, ...], after: tuple[str, ...]) -> None:
        self.before = before
        self.after = after
        super().__init__(
            f"Accelerator slice ordering changed: {list(before)} -> {list(after)}"
        )


class ExecutableNotFoundError(PreconditionError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"'{name}' not found; check that its module is loaded")


# =============================================================================
# Attach
# =============================================================================


class AttachError(MigslotError):
    """One attach strategy failed; the next one in the chain is tried."""

    def __init__(self, strategy: str, reason: str) -> None:
        self.strategy = strategy
        self.reason = reason
        super().__init__(f"{strategy}: {reason}")


class AttachFailedError(LaunchError):
    """Every attach strategy, including the affinity fallback, failed."""

    def __init__(self, pid: int, failures: list[AttachError]) -> None:
        self.pid = pid
        self.failures = failures
        reasons = "; ".join(str(f) for f in failures)
        super().__init__(f"Could not constrain PID {pid}: {reasons}")
