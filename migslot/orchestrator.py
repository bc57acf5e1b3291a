"""Launch orchestration: resolve a slot, verify its group, spawn and attach.

Example:
    from migslot.config import resolve_node_config
    from migslot.launcher import build_workload_argv
    from migslot.orchestrator import LaunchRequest, Orchestrator

    orchestrator = Orchestrator(resolve_node_config())
    handle = orchestrator.launch(LaunchRequest(
        slot_index=2,
        command=lambda slot: build_workload_argv("namd3", slot, "stmv.namd"),
        output=Path("test2.out"),
    ))
    print(handle.pid, handle.strategy)

``launch`` returns as soon as the process is spawned and attached; it never
waits for the workload. Any number of launches for different slots may run
in parallel, from one process or many.
"""

from __future__ import annotations

import contextlib
import os
import signal
import socket
import subprocess
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import psutil
from loguru import logger

from migslot.cgroup import CgroupState
from migslot.config import NodeConfig
from migslot.constants import ALLOCATION_ENV_VAR, TERMINATE_GRACE_SECONDS, StrategyName
from migslot.errors import (
    AttachFailedError,
    CgroupMissingError,
    ExecutableNotFoundError,
    LaunchError,
    PreconditionError,
    UsageError,
)
from migslot.launcher import step_argv, step_env, use_step_launcher
from migslot.partition import Slot
from migslot.registry import SlotRegistry
from migslot.strategies import (
    DEFAULT_STRATEGIES,
    AttachContext,
    AttachStrategy,
    attach_with_fallback,
    select_chain,
)
from migslot.topology import TopologySnapshot, list_accelerator_slices

type CommandFactory = Callable[[Slot], Sequence[str]]

log = logger.bind(component="orchestrator")


def _timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


class OutputSink:
    """Append-only log file shared by the orchestrator and the workload.

    Blocks written through the sink go out in a single ``write`` on an
    ``O_APPEND`` descriptor, so they never interleave with workload output.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fd: int | None = os.open(
                self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644
            )
        except OSError as e:
            raise PreconditionError(
                f"Cannot open output file {self.path}: {e.strerror or e}"
            ) from e

    @property
    def closed(self) -> bool:
        return self._fd is None

    def fileno(self) -> int:
        if self._fd is None:
            raise ValueError(f"Output sink {self.path} is closed")
        return self._fd

    def write_block(self, lines: Sequence[str]) -> None:
        data = ("\n".join(lines) + "\n").encode()
        os.write(self.fileno(), data)

    def write_line(self, line: str) -> None:
        self.write_block([line])

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None


@dataclass(frozen=True, slots=True)
class LaunchRequest:
    """What to run and where.

    Attributes:
        command: Workload argv, or a factory building it from the resolved slot.
        output: Log file receiving startup metadata and combined output.
        slot_index: Slot to run in. Mutually exclusive with accelerator.
        accelerator: Slice id (or unique prefix) selecting the slot.
        pin_accelerator: Export the slot's slice id to the workload. When
            False the job-level device binding is left untouched.
        force: Launch even if the slot is owned by a live workload.
    """

    command: Sequence[str] | CommandFactory
    output: Path
    slot_index: int | None = None
    accelerator: str | None = None
    pin_accelerator: bool = True
    force: bool = False


@dataclass
class LaunchHandle:
    """A running workload bound to one slot."""

    pid: int
    slot: Slot
    output: Path
    strategy: StrategyName
    launcher: str
    argv: tuple[str, ...]
    process: subprocess.Popen[bytes] = field(repr=False)
    sink: OutputSink = field(repr=False)
    registry: SlotRegistry | None = field(default=None, repr=False)

    def poll(self) -> int | None:
        return self.process.poll()

    @property
    def running(self) -> bool:
        return self.process.poll() is None

    def wait(self, timeout: float | None = None) -> int:
        code = self.process.wait(timeout=timeout)
        self._release()
        return code

    def terminate(self, grace: float = TERMINATE_GRACE_SECONDS) -> int | None:
        """Stop the workload's process group: SIGTERM, then SIGKILL after grace."""
        if self.process.poll() is not None:
            self._release()
            return self.process.returncode

        log.debug("Terminating slot {idx} PID {pid}", idx=self.slot.index, pid=self.pid)
        with contextlib.suppress(ProcessLookupError):
            os.killpg(self.pid, signal.SIGTERM)
        try:
            code = self.process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            log.debug("Force killing slot {idx} PID {pid}", idx=self.slot.index, pid=self.pid)
            with contextlib.suppress(ProcessLookupError):
                os.killpg(self.pid, signal.SIGKILL)
            code = self.process.wait()
        self._release()
        return code

    def close(self) -> None:
        """Close the orchestrator's side of the log. The workload keeps its own."""
        self.sink.close()

    def _release(self) -> None:
        if self.registry is not None:
            self.registry.release(self.slot.index, self.pid)


def terminate_pid(pid: int, grace: float = TERMINATE_GRACE_SECONDS) -> bool:
    """Stop a process tree not spawned by this process. Returns False if already gone."""
    try:
        proc = psutil.Process(pid)
        tree = [proc, *proc.children(recursive=True)]
    except psutil.NoSuchProcess:
        return False

    for p in tree:
        with contextlib.suppress(psutil.Error):
            p.terminate()
    _, alive = psutil.wait_procs(tree, timeout=grace)
    for p in alive:
        with contextlib.suppress(psutil.Error):
            p.kill()
    psutil.wait_procs(alive, timeout=grace)
    return True


def stop_slot(config: NodeConfig, index: int, grace: float = TERMINATE_GRACE_SECONDS) -> int | None:
    """Stop whatever workload owns slot ``index``. Returns its PID, or None if idle."""
    registry = SlotRegistry(config.runtime_dir)
    pid = registry.owner(index)
    if pid is None:
        return None
    log.info("Stopping slot {idx} PID {pid}", idx=index, pid=pid)
    terminate_pid(pid, grace=grace)
    registry.release(index, pid)
    return pid


@dataclass
class Orchestrator:
    """Composes partition, topology, cgroup and strategy selection into a launch.

    Attributes:
        config: Node configuration.
        snapshot: Slice listing to resolve against. Captured on first use
            when not given.
        strategies: Attach strategies in priority order.
        env: Base environment for workloads (the caller's environment by default).
        check_drift: Compare fresh discovery against the slice order recorded
            by `migslot setup` and refuse to launch if it changed.
    """

    config: NodeConfig
    snapshot: TopologySnapshot | None = None
    strategies: Sequence[AttachStrategy] = DEFAULT_STRATEGIES
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    check_drift: bool = True
    _discovery_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @property
    def registry(self) -> SlotRegistry:
        return SlotRegistry(self.config.runtime_dir)

    def topology(self) -> TopologySnapshot:
        """Slice listing, discovered once per orchestrator even when shared by threads."""
        with self._discovery_lock:
            if self.snapshot is None:
                fresh = TopologySnapshot(slices=list_accelerator_slices())
                if self.check_drift:
                    recorded = self.registry.load_topology()
                    if recorded is not None:
                        recorded.confirm(fresh.slices)
                self.snapshot = fresh
            return self.snapshot

    @staticmethod
    def _check_selectors(request: LaunchRequest) -> None:
        if request.slot_index is not None and request.accelerator is not None:
            raise UsageError("Use either a slot index or an accelerator id, not both")
        if request.slot_index is None and request.accelerator is None:
            raise UsageError("A slot index or an accelerator id is required")

    def resolve_slot(self, request: LaunchRequest) -> Slot:
        """Partition-table slot for the request, with its slice id bound if pinned.

        Raises:
            UsageError: If both or neither selector is given.
            ResolutionError: If the index or slice cannot be resolved.
        """
        self._check_selectors(request)

        if request.accelerator is not None:
            index = self.topology().index_of(request.accelerator)
        else:
            index = request.slot_index

        slot = self.config.plan.resolve(index)
        if request.pin_accelerator:
            slot = slot.with_accelerator(self.topology().slice_at(index))
        return slot

    def _verify_group(self, slot: Slot) -> CgroupState | None:
        cgroups = self.config.cgroups
        if cgroups.exists(slot):
            return cgroups.require(slot)
        if self.config.require_cgroup:
            raise CgroupMissingError(str(cgroups.path_for(slot)))
        log.warning("Slot {idx}: cgroup {path} missing; only CPU affinity will be enforced",
                    idx=slot.index, path=cgroups.path_for(slot))
        return None

    def _child_env(self, slot: Slot, stepped: bool) -> dict[str, str]:
        env = dict(self.env)
        for key, value in self.config.extra_env.items():
            env.setdefault(key, value)
        if stepped:
            env.update(step_env())
        if slot.accelerator_id is not None:
            env[self.config.visibility_var] = slot.accelerator_id
        return env

    def _header(
        self,
        slot: Slot,
        state: CgroupState | None,
        chain: Sequence[AttachStrategy],
        launcher: str,
        argv: Sequence[str],
        output: Path,
    ) -> list[str]:
        layout = slot.layout
        names = [str(s.name) for s in chain]
        strategy = names[0] + (f" (fallback: {', '.join(names[1:])})" if len(names) > 1 else "")
        if state is None:
            group = f"{self.config.cgroups.path_for(slot)} (missing)"
        else:
            group = f"{state.path} (cpus {state.effective_cpus}, mems {state.effective_mems})"
        visibility = (
            f"{self.config.visibility_var}={slot.accelerator_id}"
            if slot.accelerator_id is not None
            else f"{self.config.visibility_var} not set (job-level binding)"
        )
        lines = [
            f"[{_timestamp()}] Starting workload in slot {slot.index}",
            f" Host: {socket.gethostname()}",
            f" Allocation: {self.env.get(ALLOCATION_ENV_VAR) or '<none>'}",
        ]
        if self.snapshot is not None:
            lines.append(" Detected slices (0-based):")
            lines.extend(f" {line}" for line in self.snapshot.describe())
        lines += [
            f" Accelerator: {visibility}",
            f" Cores: {slot.cores.cpulist} ({len(slot.cores)} cores)  memory domain: {slot.memory_domain}",
            f" Workers: {layout.workers.cpulist} ({layout.worker_count})  "
            f"comm core: {layout.comm_core}  policy: {layout.policy}",
            f" Cgroup: {group}",
            f" Strategy: {strategy}",
            f" Launcher: {launcher}",
            f" Command: {' '.join(argv)}",
            f" Output: {output}",
        ]
        return lines

    def launch(self, request: LaunchRequest) -> LaunchHandle:
        """Start a workload in its slot and return without waiting for it.

        Raises:
            LaunchError: Any resolution, precondition or attach failure.
                Nothing is left running when it is raised.
            UsageError: If the request names both selectors or neither. The
                output file is not created.
        """
        self._check_selectors(request)
        sink = OutputSink(request.output)
        try:
            return self._launch(request, sink)
        except LaunchError as e:
            sink.write_line(f"[{_timestamp()}] ERROR: {e}")
            sink.close()
            raise
        except Exception:
            sink.close()
            raise

    def _launch(self, request: LaunchRequest, sink: OutputSink) -> LaunchHandle:
        slot = self.resolve_slot(request)
        bound = log.bind(slot=slot.index)

        state = self._verify_group(slot)
        stepped = use_step_launcher(
            self.config.launcher_mode, self.env, slice_pinned=request.pin_accelerator
        )

        ctx = AttachContext(
            slot=slot,
            cgroups=self.config.cgroups,
            cgroup_present=state is not None,
            scope_slice=self.config.scope_slice,
            attach_timeout=self.config.attach_timeout,
        )
        chain = select_chain(ctx, self.strategies)
        if not chain:
            raise AttachFailedError(0, [])

        command = request.command(slot) if callable(request.command) else request.command
        prefix = step_argv(len(slot.cores), self.config.mpi, self.config.overlap) if stepped else []
        launcher = " ".join(prefix) if stepped else "direct exec"
        argv = chain[0].wrap([*prefix, *command], ctx)

        registry = self.registry
        with registry.claim(slot.index, force=request.force):
            sink.write_block(self._header(slot, state, chain, launcher, argv, request.output))

            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=sink.fileno(),
                    stderr=subprocess.STDOUT,
                    env=self._child_env(slot, stepped),
                    start_new_session=True,
                    close_fds=True,
                )
            except FileNotFoundError as e:
                raise ExecutableNotFoundError(argv[0]) from e
            except OSError as e:
                raise PreconditionError(f"Cannot execute {argv[0]}: {e.strerror or e}") from e

            bound.info("Spawned PID {pid}: {cmd}", pid=proc.pid, cmd=" ".join(argv))

            try:
                used, failures = attach_with_fallback(chain, proc.pid, ctx)
            except AttachFailedError:
                bound.error("No attach strategy held PID {pid}; killing it", pid=proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    os.killpg(proc.pid, signal.SIGKILL)
                proc.wait()
                raise

            registry.record(slot.index, proc.pid)

        notes = [f" attach warning: {f}" for f in failures]
        sink.write_block([
            f"[{_timestamp()}] Launched in slot {slot.index} via {used} (PID {proc.pid})",
            *notes,
        ])
        bound.bind(strategy=str(used), pid=proc.pid).info("Launched")

        return LaunchHandle(
            pid=proc.pid,
            slot=slot,
            output=request.output,
            strategy=used,
            launcher="srun" if stepped else "direct",
            argv=tuple(argv),
            process=proc,
            sink=sink,
            registry=registry,
        )
