from __future__ import annotations

import contextlib
import subprocess
from collections.abc import Iterator
from pathlib import Path

import pytest

import migslot.config
from migslot.cgroup import CgroupManager
from migslot.config import NodeConfig
from migslot.partition import Slot
from migslot.topology import TopologySnapshot

SLICES = (
    "MIG-11111111-aaaa-5bbb-8ccc-000000000000",
    "MIG-22222222-aaaa-5bbb-8ccc-000000000001",
    "MIG-33333333-aaaa-5bbb-8ccc-000000000002",
)


def write_group(
    manager: CgroupManager,
    slot: Slot | int,
    cpus: str,
    mems: str,
    effective: bool = True,
) -> Path:
    """Lay out one slot group the way the kernel presents it."""
    path = manager.path_for(slot)
    path.mkdir(parents=True, exist_ok=True)
    (path / "cpuset.cpus").write_text(f"{cpus}\n")
    (path / "cpuset.mems").write_text(f"{mems}\n")
    if effective:
        (path / "cpuset.cpus.effective").write_text(f"{cpus}\n")
        (path / "cpuset.mems.effective").write_text(f"{mems}\n")
    (path / "cgroup.procs").write_text("")
    return path


@pytest.fixture
def cgroup_root(tmp_path: Path) -> Path:
    """Fake cgroup v2 mount with the cpuset controller available."""
    root = tmp_path / "cgroup"
    root.mkdir()
    (root / "cgroup.controllers").write_text("cpuset cpu io memory pids\n")
    (root / "cgroup.subtree_control").write_text("")
    (root / "cpuset.mems.effective").write_text("0-6\n")
    return root


@pytest.fixture
def cgroups(cgroup_root: Path) -> CgroupManager:
    return CgroupManager(base=cgroup_root / "mig", prefix="mig", root=cgroup_root)


@pytest.fixture
def snapshot() -> TopologySnapshot:
    return TopologySnapshot(slices=SLICES)


@pytest.fixture
def node_config(tmp_path: Path, cgroups: CgroupManager) -> NodeConfig:
    """Small node: 3 slots of 2 cores each, groups under the fake mount."""
    return NodeConfig(
        total_cores=6,
        slot_count=3,
        cores_per_slot=2,
        cgroup_base=cgroups.base,
        runtime_dir=tmp_path / "run",
        attach_timeout=1.0,
    )


@pytest.fixture(autouse=True)
def no_global_config(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch):
    """Keep the user's ~/.migslot/defaults.toml out of every test."""
    missing = tmp_path_factory.mktemp("home") / "defaults.toml"
    monkeypatch.setattr(migslot.config, "GLOBAL_CONFIG_PATH", missing)
    for var in migslot.config.ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def sleeper() -> Iterator[subprocess.Popen[bytes]]:
    proc = subprocess.Popen(["sleep", "30"])
    try:
        yield proc
    finally:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        proc.wait()
