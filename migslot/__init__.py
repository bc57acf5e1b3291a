"""migslot - run workloads in isolated MIG slots.

A node with one accelerator split into N MIG slices is divided into N slots.
Each slot owns a contiguous core block, one memory domain and one slice,
enforced by a cgroup v2 cpuset group.

Example:

    from pathlib import Path
    from migslot import LaunchRequest, Orchestrator, build_workload_argv, resolve_node_config

    orchestrator = Orchestrator(resolve_node_config())
    handle = orchestrator.launch(LaunchRequest(
        slot_index=3,
        command=lambda slot: build_workload_argv("namd3", slot, "stmv.namd"),
        output=Path("test3.out"),
    ))
    handle.wait()
"""

# Partition table
from migslot.partition import CoreRange, PartitionPlan, Slot, WorkerLayout, resolve

# Topology discovery
from migslot.topology import TopologySnapshot, list_accelerator_slices

# Isolation groups
from migslot.cgroup import CgroupManager, CgroupState, ProvisionReport

# Attach strategies
from migslot.strategies import (
    DEFAULT_STRATEGIES,
    AffinityOnly,
    AttachContext,
    AttachStrategy,
    GroupExec,
    LaunchThenMove,
    ServiceScope,
    select_chain,
)

# Launcher and workload command
from migslot.launcher import build_workload_argv, step_argv, use_step_launcher

# Configuration
from migslot.config import NodeConfig, resolve_node_config

# Orchestration
from migslot.orchestrator import LaunchHandle, LaunchRequest, Orchestrator, stop_slot

# Errors
from migslot.errors import (
    AttachFailedError,
    LaunchError,
    MigslotError,
    PreconditionError,
    ResolutionError,
    UsageError,
)

from migslot.constants import CommPolicy, LauncherMode, StrategyName

__version__ = "0.1.0"

__all__ = [
    # Partition
    "CoreRange",
    "PartitionPlan",
    "Slot",
    "WorkerLayout",
    "resolve",
    "CommPolicy",
    # Topology
    "TopologySnapshot",
    "list_accelerator_slices",
    # Cgroups
    "CgroupManager",
    "CgroupState",
    "ProvisionReport",
    # Strategies
    "StrategyName",
    "AttachStrategy",
    "AttachContext",
    "ServiceScope",
    "GroupExec",
    "LaunchThenMove",
    "AffinityOnly",
    "DEFAULT_STRATEGIES",
    "select_chain",
    # Launcher
    "LauncherMode",
    "build_workload_argv",
    "step_argv",
    "use_step_launcher",
    # Config
    "NodeConfig",
    "resolve_node_config",
    # Orchestration
    "Orchestrator",
    "LaunchRequest",
    "LaunchHandle",
    "stop_slot",
    # Errors
    "MigslotError",
    "UsageError",
    "LaunchError",
    "ResolutionError",
    "PreconditionError",
    "AttachFailedError",
    # Version
    "__version__",
]
