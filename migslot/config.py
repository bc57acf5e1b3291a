"""TOML-based node configuration.

Loads ~/.migslot/defaults.toml (global) and migslot.toml (project), merges
them, applies MIGSLOT_* environment overrides and returns a NodeConfig.

Example migslot.toml::

    [partition]
    total_cores = 72
    slot_count = 7
    cores_per_slot = 10
    comm_policy = "reserved"

    [cgroup]
    base = "/sys/fs/cgroup/mig"

    [launch]
    mode = "auto"
    mpi = "pmix"
    env = { UCX_TLS = "self,sm,cuda_copy,cuda_ipc" }
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from migslot.cgroup import CgroupManager
from migslot.constants import (
    DEFAULT_ATTACH_TIMEOUT,
    DEFAULT_CGROUP_BASE,
    DEFAULT_CGROUP_PREFIX,
    DEFAULT_CORES_PER_SLOT,
    DEFAULT_DEVICES,
    DEFAULT_EXECUTABLE,
    DEFAULT_EXECUTABLE_DIR_VAR,
    DEFAULT_EXTRA_ENV,
    DEFAULT_RUNTIME_DIR,
    DEFAULT_SLOT_COUNT,
    DEFAULT_TOTAL_CORES,
    DEFAULT_VISIBILITY_VAR,
    CommPolicy,
    LauncherMode,
    MpiProtocol,
)
from migslot.errors import ConfigurationError
from migslot.partition import PartitionPlan
from migslot.strategies import DEFAULT_SCOPE_SLICE

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".migslot" / "defaults.toml"
PROJECT_CONFIG_NAME = "migslot.toml"


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _parse_domains(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    return tuple(str(v) for v in value)


def _parse_env(value: Any) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise ValueError(f"expected a table, got {type(value).__name__}")
    return {str(k): str(v) for k, v in value.items()}


@dataclass(frozen=True, slots=True)
class NodeConfig:
    """Resolved node configuration.

    Attributes:
        total_cores: Logical CPUs on the node.
        slot_count: Number of slots (normally one per MIG slice).
        cores_per_slot: Contiguous cores per slot.
        comm_policy: Comm-core placement inside each block.
        memory_domains: NUMA node per slot (None = slot index).
        cgroup_base: Shared parent group of all slot groups.
        cgroup_prefix: Slot group name prefix (mig -> mig0, mig1, ...).
        require_cgroup: Missing group is fatal (False = affinity fallback).
        scope_slice: systemd slice template for the service-scope strategy.
        attach_timeout: Seconds to confirm a launch-then-move attach.
        launcher_mode: Job-step launcher usage (always/never/auto).
        mpi: Process-management protocol passed to the step launcher.
        overlap: Allow concurrent steps inside one allocation.
        visibility_var: Accelerator visibility environment variable.
        extra_env: Extra variables for every workload environment.
        executable: Workload binary name or path.
        executable_dir_var: Env var naming a directory holding the binary.
        devices: Device index passed to the workload.
        runtime_dir: Directory for per-slot PID files.
    """

    total_cores: int = DEFAULT_TOTAL_CORES
    slot_count: int = DEFAULT_SLOT_COUNT
    cores_per_slot: int = DEFAULT_CORES_PER_SLOT
    comm_policy: CommPolicy = CommPolicy.SHARED
    memory_domains: tuple[str, ...] | None = None
    cgroup_base: Path = Path(DEFAULT_CGROUP_BASE)
    cgroup_prefix: str = DEFAULT_CGROUP_PREFIX
    require_cgroup: bool = True
    scope_slice: str = DEFAULT_SCOPE_SLICE
    attach_timeout: float = DEFAULT_ATTACH_TIMEOUT
    launcher_mode: LauncherMode = LauncherMode.AUTO
    mpi: MpiProtocol = MpiProtocol.PMIX
    overlap: bool = True
    visibility_var: str = DEFAULT_VISIBILITY_VAR
    extra_env: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_EXTRA_ENV))
    executable: str = DEFAULT_EXECUTABLE
    executable_dir_var: str | None = DEFAULT_EXECUTABLE_DIR_VAR
    devices: str = DEFAULT_DEVICES
    runtime_dir: Path = Path(DEFAULT_RUNTIME_DIR)

    @property
    def plan(self) -> PartitionPlan:
        return PartitionPlan(
            total_cores=self.total_cores,
            slot_count=self.slot_count,
            cores_per_slot=self.cores_per_slot,
            policy=self.comm_policy,
            memory_domains=self.memory_domains,
        )

    @property
    def cgroups(self) -> CgroupManager:
        return CgroupManager(base=self.cgroup_base, prefix=self.cgroup_prefix)

    def with_overrides(self, **overrides: Any) -> NodeConfig:
        """Copy with non-None overrides applied and coerced."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return _coerce(replace(self, **values))


# (section, key) in TOML -> NodeConfig field
_TOML_KEYS: dict[tuple[str, str], str] = {
    ("partition", "total_cores"): "total_cores",
    ("partition", "slot_count"): "slot_count",
    ("partition", "cores_per_slot"): "cores_per_slot",
    ("partition", "comm_policy"): "comm_policy",
    ("partition", "memory_domains"): "memory_domains",
    ("cgroup", "base"): "cgroup_base",
    ("cgroup", "prefix"): "cgroup_prefix",
    ("cgroup", "require"): "require_cgroup",
    ("cgroup", "scope_slice"): "scope_slice",
    ("cgroup", "attach_timeout"): "attach_timeout",
    ("launch", "mode"): "launcher_mode",
    ("launch", "mpi"): "mpi",
    ("launch", "overlap"): "overlap",
    ("launch", "visibility_var"): "visibility_var",
    ("launch", "env"): "extra_env",
    ("launch", "runtime_dir"): "runtime_dir",
    ("workload", "executable"): "executable",
    ("workload", "executable_dir_var"): "executable_dir_var",
    ("workload", "devices"): "devices",
}

ENV_OVERRIDES: dict[str, str] = {
    "MIGSLOT_TOTAL_CPUS": "total_cores",
    "MIGSLOT_SLOTS": "slot_count",
    "MIGSLOT_CORES_PER_SLOT": "cores_per_slot",
    "MIGSLOT_COMM_POLICY": "comm_policy",
    "MIGSLOT_CGROUP_BASE": "cgroup_base",
    "MIGSLOT_REQUIRE_CGROUP": "require_cgroup",
    "MIGSLOT_VISIBILITY_VAR": "visibility_var",
    "MIGSLOT_USE_SRUN": "launcher_mode",
    "MIGSLOT_SRUN_MPI": "mpi",
    "MIGSLOT_SRUN_OVERLAP": "overlap",
    "MIGSLOT_DEVICES": "devices",
    "MIGSLOT_EXECUTABLE": "executable",
    "MIGSLOT_RUNTIME_DIR": "runtime_dir",
}

_CONVERTERS: dict[str, Callable[[Any], Any]] = {
    "total_cores": int,
    "slot_count": int,
    "cores_per_slot": int,
    "comm_policy": CommPolicy,
    "memory_domains": _parse_domains,
    "cgroup_base": Path,
    "cgroup_prefix": str,
    "require_cgroup": _parse_bool,
    "scope_slice": str,
    "attach_timeout": float,
    "launcher_mode": LauncherMode,
    "mpi": MpiProtocol,
    "overlap": _parse_bool,
    "visibility_var": str,
    "extra_env": _parse_env,
    "executable": str,
    "executable_dir_var": lambda v: str(v) if v else None,
    "devices": str,
    "runtime_dir": Path,
}


def _convert(name: str, value: Any) -> Any:
    try:
        return _CONVERTERS[name](value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {value!r} ({e})") from e


def _coerce(config: NodeConfig) -> NodeConfig:
    values = {f.name: _convert(f.name, getattr(config, f.name)) for f in fields(config)}
    return NodeConfig(**values)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)
    return _deep_merge(global_cfg, project_cfg)


def node_config_from_raw(raw: RawConfig, env: Mapping[str, str] | None = None) -> NodeConfig:
    """Build a NodeConfig from merged TOML plus environment overrides.

    Raises:
        ConfigurationError: On unknown sections/keys or invalid values.
    """
    values: dict[str, Any] = {}
    known_sections = {section for section, _ in _TOML_KEYS}

    for section, table in raw.items():
        if section not in known_sections or not isinstance(table, dict):
            raise ConfigurationError(f"Unknown config section [{section}]")
        for key, value in table.items():
            name = _TOML_KEYS.get((section, key))
            if name is None:
                raise ConfigurationError(f"Unknown config key {section}.{key}")
            values[name] = _convert(name, value)

    env = os.environ if env is None else env
    for var, name in ENV_OVERRIDES.items():
        if var in env and env[var] != "":
            values[name] = _convert(name, env[var])

    return NodeConfig(**values)


def resolve_node_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> NodeConfig:
    return node_config_from_raw(
        load_config(project_dir=project_dir, global_path=global_path),
        env=env,
    )
