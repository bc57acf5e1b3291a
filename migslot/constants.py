"""Centralized constants and enums for migslot.

All magic strings, paths, and kernel/driver interface names are defined here
so the rest of the codebase never spells them out twice.
"""

from __future__ import annotations

import tempfile
from enum import StrEnum
from typing import Final

# =============================================================================
# Node Partitioning Defaults
# =============================================================================

DEFAULT_TOTAL_CORES: Final = 72
DEFAULT_SLOT_COUNT: Final = 7
DEFAULT_CORES_PER_SLOT: Final = 10


class CommPolicy(StrEnum):
    """How the communication thread is placed inside a slot's core block."""

    SHARED = "shared"
    RESERVED = "reserved"


# =============================================================================
# cgroup v2 Interface
# =============================================================================

CGROUP_ROOT: Final = "/sys/fs/cgroup"
DEFAULT_CGROUP_BASE: Final = f"{CGROUP_ROOT}/mig"
DEFAULT_CGROUP_PREFIX: Final = "mig"

CPUSET_CPUS: Final = "cpuset.cpus"
CPUSET_MEMS: Final = "cpuset.mems"
CPUSET_CPUS_EFFECTIVE: Final = "cpuset.cpus.effective"
CPUSET_MEMS_EFFECTIVE: Final = "cpuset.mems.effective"
CGROUP_PROCS: Final = "cgroup.procs"
CGROUP_TASKS_LEGACY: Final = "tasks"
SUBTREE_CONTROL: Final = "cgroup.subtree_control"
CGROUP_CONTROLLERS: Final = "cgroup.controllers"


# =============================================================================
# Accelerator Driver
# =============================================================================

SLICE_LIST_COMMAND: Final = ("nvidia-smi", "-L")
DEFAULT_VISIBILITY_VAR: Final = "CUDA_VISIBLE_DEVICES"
DEFAULT_DEVICES: Final = "0"


# =============================================================================
# Launch Strategies
# =============================================================================


class StrategyName(StrEnum):
    """Attach strategies, in priority order."""

    SERVICE_SCOPE = "service-scope"
    GROUP_EXEC = "group-exec"
    LAUNCH_THEN_MOVE = "launch-then-move"
    AFFINITY_ONLY = "affinity-only"


SYSTEMD_RUN: Final = "systemd-run"
CGEXEC: Final = "cgexec"
DEFAULT_ATTACH_TIMEOUT: Final = 2.0


# =============================================================================
# Job-Step Launcher
# =============================================================================


class LauncherMode(StrEnum):
    """Whether the workload is wrapped by the job-step launcher."""

    ALWAYS = "always"
    NEVER = "never"
    AUTO = "auto"


class MpiProtocol(StrEnum):
    """Process-management interface handed to the job-step launcher."""

    PMIX = "pmix"
    PMI2 = "pmi2"
    NONE = "none"


SRUN: Final = "srun"
ALLOCATION_ENV_VAR: Final = "SLURM_JOB_ID"


# =============================================================================
# Workload
# =============================================================================

DEFAULT_EXECUTABLE: Final = "namd3"
DEFAULT_EXECUTABLE_DIR_VAR: Final = "TACC_NAMD_GPU_BIN"
DEFAULT_EXTRA_ENV: Final[dict[str, str]] = {
    "UCX_TLS": "self,sm,cuda_copy,cuda_ipc",
}


# =============================================================================
# Runtime State
# =============================================================================

DEFAULT_RUNTIME_DIR: Final = f"{tempfile.gettempdir()}/migslot"
TERMINATE_GRACE_SECONDS: Final = 5.0


# =============================================================================
# Exit Codes
# =============================================================================

EXIT_OK: Final = 0
EXIT_USAGE: Final = 1
EXIT_FAILURE: Final = 2
