"""Attach strategies: how a new process tree ends up inside its slot.

Strategies are tried in a fixed priority order. Each exposes a capability
probe plus the two hooks the orchestrator calls around process creation:

- ``wrap`` rewrites the command line before spawn (race-free strategies
  start the workload already inside the group);
- ``attach`` runs after spawn (launch-then-move and the affinity fallback).

Priority::

    service-scope  ->  group-exec  ->  launch-then-move  ->  affinity-only
    (systemd-run)      (cgexec)        (cgroup.procs)       (sched_setaffinity)

Probes are re-run on every launch; nothing is cached between launches.
"""

from __future__ import annotations

import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from typing import ClassVar

import psutil
from loguru import logger
from tenacity import RetryError, retry, retry_if_exception_type, stop_after_delay, wait_fixed

from migslot.cgroup import CgroupManager
from migslot.constants import CGEXEC, DEFAULT_ATTACH_TIMEOUT, SYSTEMD_RUN, StrategyName
from migslot.errors import AttachError, AttachFailedError
from migslot.partition import Slot

log = logger.bind(component="strategy")

DEFAULT_SCOPE_SLICE = "migslot-slot{index}.slice"


class _NotAttachedError(Exception):
    """PID not yet visible in the membership file - retry."""


@dataclass(frozen=True, slots=True)
class AttachContext:
    """Everything a strategy needs to know about the target slot.

    Attributes:
        slot: Resolved slot.
        cgroups: Manager for the node's slot groups.
        cgroup_present: Whether the slot's group exists and was verified.
        scope_slice: systemd slice name template ("{index}" is substituted).
        attach_timeout: Seconds to wait for a moved PID to show up.
    """

    slot: Slot
    cgroups: CgroupManager
    cgroup_present: bool
    scope_slice: str = DEFAULT_SCOPE_SLICE
    attach_timeout: float = DEFAULT_ATTACH_TIMEOUT


class AttachStrategy:
    """Base strategy: no command rewrite, nothing to do after spawn."""

    name: ClassVar[StrategyName]
    pre_spawn: ClassVar[bool] = False

    def probe(self, ctx: AttachContext) -> bool:
        raise NotImplementedError

    def wrap(self, argv: Sequence[str], ctx: AttachContext) -> list[str]:
        return list(argv)

    def attach(self, pid: int, ctx: AttachContext) -> None:
        return None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class ServiceScope(AttachStrategy):
    """Start the workload as a transient systemd scope carrying the slot's cpuset."""

    name = StrategyName.SERVICE_SCOPE
    pre_spawn = True

    def probe(self, ctx: AttachContext) -> bool:
        return ctx.cgroup_present and shutil.which(SYSTEMD_RUN) is not None

    def wrap(self, argv: Sequence[str], ctx: AttachContext) -> list[str]:
        slot = ctx.slot
        return [
            SYSTEMD_RUN,
            "--scope",
            "--quiet",
            f"--slice={ctx.scope_slice.format(index=slot.index)}",
            "-p", f"AllowedCPUs={slot.cores.cpulist}",
            "-p", f"AllowedMemoryNodes={slot.memory_domain}",
            "--",
            *argv,
        ]


class GroupExec(AttachStrategy):
    """Start the workload inside the slot's group with cgexec."""

    name = StrategyName.GROUP_EXEC
    pre_spawn = True

    def probe(self, ctx: AttachContext) -> bool:
        return ctx.cgroup_present and shutil.which(CGEXEC) is not None

    def wrap(self, argv: Sequence[str], ctx: AttachContext) -> list[str]:
        return [CGEXEC, "-g", f"cpuset:{ctx.cgroups.relative_path(ctx.slot)}", *argv]


def _descendants(pid: int) -> list[int]:
    try:
        return [p.pid for p in psutil.Process(pid).children(recursive=True)]
    except psutil.Error:
        return []


class LaunchThenMove(AttachStrategy):
    """Spawn normally, then write the PID into ``cgroup.procs``.

    Children forked after the move inherit the group. Children forked before
    it are moved best-effort. The window between spawn and move is unconstrained.
    """

    name = StrategyName.LAUNCH_THEN_MOVE

    def probe(self, ctx: AttachContext) -> bool:
        return ctx.cgroup_present

    def attach(self, pid: int, ctx: AttachContext) -> None:
        try:
            ctx.cgroups.attach(ctx.slot, pid)
        except OSError as e:
            raise AttachError(self.name, f"could not move PID {pid}: {e}") from e

        for child in _descendants(pid):
            try:
                ctx.cgroups.attach(ctx.slot, child)
            except OSError as e:
                log.debug("Child {child} not moved: {err}", child=child, err=e)

        @retry(
            stop=stop_after_delay(ctx.attach_timeout),
            wait=wait_fixed(0.05),
            retry=retry_if_exception_type(_NotAttachedError),
        )
        def _confirm() -> None:
            if pid not in ctx.cgroups.members(ctx.slot):
                raise _NotAttachedError()

        try:
            _confirm()
        except RetryError as e:
            raise AttachError(
                self.name,
                f"PID {pid} not listed in {ctx.cgroups.path_for(ctx.slot)} "
                f"after {ctx.attach_timeout:.1f}s",
            ) from e


class AffinityOnly(AttachStrategy):
    """Restrict CPU affinity of the process tree. No memory or group enforcement."""

    name = StrategyName.AFFINITY_ONLY

    def probe(self, ctx: AttachContext) -> bool:
        return True

    def attach(self, pid: int, ctx: AttachContext) -> None:
        cores = list(ctx.slot.cores)
        log.warning(
            "Slot {idx}: falling back to CPU affinity {cpus} only "
            "(no memory-domain or group enforcement)",
            idx=ctx.slot.index, cpus=ctx.slot.cores.cpulist,
        )
        try:
            psutil.Process(pid).cpu_affinity(cores)
        except (psutil.Error, OSError, ValueError) as e:
            raise AttachError(self.name, f"could not set affinity of PID {pid}: {e}") from e

        for child in _descendants(pid):
            try:
                psutil.Process(child).cpu_affinity(cores)
            except (psutil.Error, OSError, ValueError) as e:
                log.debug("Child {child} affinity not set: {err}", child=child, err=e)


DEFAULT_STRATEGIES: tuple[AttachStrategy, ...] = (
    ServiceScope(),
    GroupExec(),
    LaunchThenMove(),
    AffinityOnly(),
)


def select_chain(
    ctx: AttachContext,
    strategies: Sequence[AttachStrategy] = DEFAULT_STRATEGIES,
) -> list[AttachStrategy]:
    """Strategies whose probe passes, in priority order. The first one is primary."""
    chain = [s for s in strategies if s.probe(ctx)]
    log.debug("Slot {idx} attach chain: {names}",
              idx=ctx.slot.index, names=[str(s.name) for s in chain])
    return chain


def attach_with_fallback(
    chain: Sequence[AttachStrategy],
    pid: int,
    ctx: AttachContext,
) -> tuple[StrategyName, list[AttachError]]:
    """Run the post-spawn part of the chain until one strategy holds.

    The primary strategy always runs (a no-op for pre-spawn strategies).
    On AttachError the remaining post-spawn strategies are tried in order.

    Returns:
        The strategy that took effect and the failures recovered on the way.

    Raises:
        AttachFailedError: If every strategy failed.
    """
    if not chain:
        raise AttachFailedError(pid, [AttachError("select", "no strategy available")])

    failures: list[AttachError] = []
    candidates = [chain[0], *(s for s in chain[1:] if not s.pre_spawn)]

    for strategy in candidates:
        try:
            strategy.attach(pid, ctx)
        except AttachError as e:
            log.warning("Attach via {name} failed: {reason}", name=strategy.name, reason=e.reason)
            failures.append(e)
            continue
        return strategy.name, failures

    raise AttachFailedError(pid, failures)
