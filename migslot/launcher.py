"""Job-step launcher wrapping and workload command construction."""

from __future__ import annotations

import os
import shutil
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from migslot.constants import (
    ALLOCATION_ENV_VAR,
    DEFAULT_DEVICES,
    SRUN,
    LauncherMode,
    MpiProtocol,
)
from migslot.errors import AllocationRequiredError, ExecutableNotFoundError
from migslot.partition import Slot


def in_allocation(env: Mapping[str, str]) -> bool:
    return bool(env.get(ALLOCATION_ENV_VAR))


def use_step_launcher(
    mode: LauncherMode | str,
    env: Mapping[str, str],
    slice_pinned: bool,
) -> bool:
    """Decide whether the workload runs under the job-step launcher.

    ``auto`` uses it only inside an allocation and only when no slice was
    pinned; a pinned slice must not be remapped by step-level device binding.

    Raises:
        AllocationRequiredError: If mode is ``always`` outside an allocation.
    """
    match LauncherMode(mode):
        case LauncherMode.ALWAYS:
            if not in_allocation(env):
                raise AllocationRequiredError()
            return True
        case LauncherMode.NEVER:
            return False
        case LauncherMode.AUTO:
            return in_allocation(env) and not slice_pinned


def step_argv(
    cpus_per_task: int,
    mpi: MpiProtocol | str = MpiProtocol.PMIX,
    overlap: bool = True,
) -> list[str]:
    """srun prefix for one unbound, unbuffered single-task step."""
    argv = [
        SRUN,
        "--ntasks=1",
        "--unbuffered",
        "--cpu-bind=none",
        "--gpu-bind=none",
        f"--cpus-per-task={cpus_per_task}",
    ]
    if overlap:
        argv.append("--overlap")
    mpi = MpiProtocol(mpi)
    if mpi is not MpiProtocol.NONE:
        argv.append(f"--mpi={mpi}")
    return argv


def step_env() -> dict[str, str]:
    """Environment entries that stop the launcher from binding CPUs on its own."""
    return {"SLURM_CPU_BIND": "none"}


@dataclass(frozen=True, slots=True)
class WorkloadFlags:
    """Flag spellings of the workload's thread-placement options (Charm++ by default)."""

    worker_count: str = "+ppn"
    worker_map: str = "+pemap"
    comm_core: str = "+commap"
    devices: str = "+devices"


CHARM_FLAGS = WorkloadFlags()


def build_workload_argv(
    executable: str,
    slot: Slot,
    input_path: str | Path,
    devices: str = DEFAULT_DEVICES,
    flags: WorkloadFlags = CHARM_FLAGS,
    extra_args: Sequence[str] = (),
) -> list[str]:
    """Workload command line with thread placement computed from the slot.

    With a single slice visible, the workload addresses it as device 0.
    """
    layout = slot.layout
    return [
        executable,
        flags.worker_count, str(layout.worker_count),
        flags.worker_map, layout.workers.cpulist,
        flags.comm_core, str(layout.comm_core),
        flags.devices, devices,
        *extra_args,
        str(input_path),
    ]


def locate_executable(
    name: str,
    dir_var: str | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Find the workload binary: ``$<dir_var>/<name>`` first, then PATH.

    Raises:
        ExecutableNotFoundError: If neither location has it.
    """
    env = os.environ if env is None else env
    if dir_var and env.get(dir_var):
        candidate = Path(env[dir_var]) / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    found = shutil.which(name, path=env.get("PATH"))
    if found is None:
        raise ExecutableNotFoundError(name)
    return found
