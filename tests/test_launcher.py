"""Tests for job-step wrapping and workload command construction."""

from __future__ import annotations

from pathlib import Path

import pytest

from migslot.constants import LauncherMode, MpiProtocol
from migslot.errors import AllocationRequiredError, ExecutableNotFoundError, PreconditionError
from migslot.launcher import (
    WorkloadFlags,
    build_workload_argv,
    in_allocation,
    locate_executable,
    step_argv,
    step_env,
    use_step_launcher,
)
from migslot.partition import resolve

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

ALLOC = {"SLURM_JOB_ID": "4242"}


class TestUseStepLauncher:
    def test_allocation_detection(self) -> None:
        assert in_allocation(ALLOC)
        assert not in_allocation({})
        assert not in_allocation({"SLURM_JOB_ID": ""})

    @pytest.mark.parametrize("pinned", [True, False])
    def test_always_inside_allocation(self, pinned: bool) -> None:
        assert use_step_launcher(LauncherMode.ALWAYS, ALLOC, slice_pinned=pinned)

    def test_always_outside_allocation(self) -> None:
        with pytest.raises(AllocationRequiredError) as exc:
            use_step_launcher("always", {}, slice_pinned=False)
        assert isinstance(exc.value, PreconditionError)

    @pytest.mark.parametrize("env", [ALLOC, {}])
    def test_never(self, env: dict[str, str]) -> None:
        assert not use_step_launcher(LauncherMode.NEVER, env, slice_pinned=False)

    @pytest.mark.parametrize(
        ("env", "pinned", "expected"),
        [
            (ALLOC, False, True),
            (ALLOC, True, False),
            ({}, False, False),
            ({}, True, False),
        ],
    )
    def test_auto(self, env: dict[str, str], pinned: bool, expected: bool) -> None:
        assert use_step_launcher("auto", env, slice_pinned=pinned) is expected

    def test_unknown_mode(self) -> None:
        with pytest.raises(ValueError):
            use_step_launcher("sometimes", ALLOC, slice_pinned=False)


class TestStepArgv:
    def test_default(self) -> None:
        assert step_argv(10) == [
            "srun",
            "--ntasks=1",
            "--unbuffered",
            "--cpu-bind=none",
            "--gpu-bind=none",
            "--cpus-per-task=10",
            "--overlap",
            "--mpi=pmix",
        ]

    def test_pmi2_without_overlap(self) -> None:
        argv = step_argv(4, MpiProtocol.PMI2, overlap=False)
        assert "--overlap" not in argv
        assert argv[-1] == "--mpi=pmi2"

    def test_no_protocol(self) -> None:
        assert not any(a.startswith("--mpi") for a in step_argv(4, "none"))

    def test_step_env(self) -> None:
        assert step_env() == {"SLURM_CPU_BIND": "none"}


class TestBuildWorkloadArgv:
    def test_shared(self) -> None:
        slot = resolve(3, 72, 7, 10)
        assert build_workload_argv("namd3", slot, "stmv.namd") == [
            "namd3", "+ppn", "10", "+pemap", "30-39", "+commap", "30",
            "+devices", "0", "stmv.namd",
        ]

    def test_reserved(self) -> None:
        slot = resolve(3, 72, 7, 10, policy="reserved")
        argv = build_workload_argv("namd3", slot, Path("stmv.namd"))
        assert argv[1:7] == ["+ppn", "9", "+pemap", "31-39", "+commap", "30"]

    def test_custom_flags_and_extra_args(self) -> None:
        slot = resolve(0, 72, 7, 10)
        flags = WorkloadFlags(worker_count="--threads", worker_map="--cpus",
                              comm_core="--comm", devices="--gpu")
        argv = build_workload_argv("app", slot, "in", devices="1", flags=flags,
                                   extra_args=["--verbose"])
        assert argv == ["app", "--threads", "10", "--cpus", "0-9", "--comm", "0",
                        "--gpu", "1", "--verbose", "in"]


class TestLocateExecutable:
    def _make(self, directory: Path, name: str = "namd3") -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        exe = directory / name
        exe.write_text("#!/bin/sh\n")
        exe.chmod(0o755)
        return exe

    def test_module_directory_first(self, tmp_path: Path) -> None:
        module_exe = self._make(tmp_path / "module")
        self._make(tmp_path / "path")
        env = {"TACC_NAMD_GPU_BIN": str(tmp_path / "module"), "PATH": str(tmp_path / "path")}
        assert locate_executable("namd3", "TACC_NAMD_GPU_BIN", env) == str(module_exe)

    def test_path_fallback(self, tmp_path: Path) -> None:
        path_exe = self._make(tmp_path / "path")
        env = {"TACC_NAMD_GPU_BIN": str(tmp_path / "empty"), "PATH": str(tmp_path / "path")}
        assert locate_executable("namd3", "TACC_NAMD_GPU_BIN", env) == str(path_exe)

    def test_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(ExecutableNotFoundError, match="namd3"):
            locate_executable("namd3", "TACC_NAMD_GPU_BIN", {"PATH": str(tmp_path)})
