"""Tests for accelerator slice discovery."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from migslot.errors import (
    AcceleratorNotFoundError,
    AmbiguousSelectorError,
    DiscoveryError,
    ResolutionError,
    TopologyDriftError,
)
from migslot.topology import (
    TopologySnapshot,
    list_accelerator_slices,
    parse_slice_line,
    parse_slice_listing,
)

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

LISTING = """\
GPU 0: NVIDIA GH200 480GB (UUID: GPU-7c1e2d3f-1111-2222-3333-444455556666)
  MIG 1g.12gb     Device  0: (UUID: MIG-6f2a0000-aaaa-5bbb-8ccc-000000000000)
  MIG 1g.12gb     Device  1: (UUID: MIG-0b9d0000-aaaa-5bbb-8ccc-000000000001)
  MIG 1g.12gb     Device  2: (UUID:   MIG-1c8e0000-aaaa-5bbb-8ccc-000000000002  )
"""


class TestParse:
    def test_listing_in_driver_order(self) -> None:
        assert parse_slice_listing(LISTING) == (
            "MIG-6f2a0000-aaaa-5bbb-8ccc-000000000000",
            "MIG-0b9d0000-aaaa-5bbb-8ccc-000000000001",
            "MIG-1c8e0000-aaaa-5bbb-8ccc-000000000002",
        )

    def test_parent_gpu_line_ignored(self) -> None:
        assert parse_slice_line("GPU 0: NVIDIA H100 (UUID: GPU-abc)") is None

    def test_unrelated_text_ignored(self) -> None:
        assert parse_slice_line("No devices were found") is None
        assert parse_slice_line("MIGRATION in progress (UUID: MIG-abc)") is None

    def test_legacy_uuid_format(self) -> None:
        line = "  MIG 3g.20gb Device 0: (UUID: MIG-GPU-5d3c/1/0)"
        assert parse_slice_line(line) == "MIG-GPU-5d3c/1/0"

    def test_no_matching_lines(self) -> None:
        assert parse_slice_listing("GPU 0: NVIDIA A100 (UUID: GPU-1234)\n") == ()
        assert parse_slice_listing("") == ()


class TestListAcceleratorSlices:
    def test_returns_parsed_slices(self) -> None:
        result = MagicMock(stdout=LISTING, stderr="", returncode=0)
        with patch("migslot.topology.subprocess.run", return_value=result) as run:
            slices = list_accelerator_slices()
        assert len(slices) == 3
        assert run.call_args.args[0] == ["nvidia-smi", "-L"]

    def test_empty_output_is_not_an_error(self) -> None:
        result = MagicMock(stdout="", stderr="", returncode=0)
        with patch("migslot.topology.subprocess.run", return_value=result):
            assert list_accelerator_slices() == ()

    def test_command_not_found(self) -> None:
        with patch("migslot.topology.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(DiscoveryError, match="command not found"):
                list_accelerator_slices()

    def test_timeout(self) -> None:
        err = subprocess.TimeoutExpired(["nvidia-smi", "-L"], 30)
        with patch("migslot.topology.subprocess.run", side_effect=err):
            with pytest.raises(DiscoveryError, match="timed out"):
                list_accelerator_slices()

    def test_nonzero_exit_without_slices(self) -> None:
        result = MagicMock(stdout="", stderr="NVIDIA-SMI has failed", returncode=9)
        with patch("migslot.topology.subprocess.run", return_value=result):
            with pytest.raises(DiscoveryError, match="NVIDIA-SMI has failed"):
                list_accelerator_slices()

    def test_nonzero_exit_with_slices_keeps_them(self) -> None:
        result = MagicMock(stdout=LISTING, stderr="", returncode=1)
        with patch("migslot.topology.subprocess.run", return_value=result):
            assert len(list_accelerator_slices()) == 3

    def test_real_missing_binary(self) -> None:
        with pytest.raises(DiscoveryError):
            list_accelerator_slices(("migslot-no-such-tool", "-L"))


class TestSnapshot:
    def test_slice_at(self, snapshot: TopologySnapshot) -> None:
        assert snapshot.slice_at(1) == snapshot.slices[1]

    def test_index_out_of_range_reports_valid_range(self, snapshot: TopologySnapshot) -> None:
        with pytest.raises(AcceleratorNotFoundError) as exc:
            snapshot.slice_at(5)
        assert isinstance(exc.value, ResolutionError)
        assert exc.value.valid_range == (0, 2)
        assert "0..2" in str(exc.value)

    def test_no_slices(self) -> None:
        with pytest.raises(AcceleratorNotFoundError) as exc:
            TopologySnapshot(slices=()).slice_at(0)
        assert exc.value.valid_range is None

    def test_index_of_exact(self, snapshot: TopologySnapshot) -> None:
        assert snapshot.index_of(snapshot.slices[2]) == 2

    def test_index_of_prefix(self, snapshot: TopologySnapshot) -> None:
        assert snapshot.index_of("MIG-2222") == 1

    def test_index_of_ambiguous(self, snapshot: TopologySnapshot) -> None:
        with pytest.raises(AmbiguousSelectorError):
            snapshot.index_of("MIG-")

    def test_index_of_unknown(self, snapshot: TopologySnapshot) -> None:
        with pytest.raises(AcceleratorNotFoundError):
            snapshot.index_of("MIG-9999")

    def test_confirm_same_order(self, snapshot: TopologySnapshot) -> None:
        snapshot.confirm(list(snapshot.slices))

    def test_confirm_reordered(self, snapshot: TopologySnapshot) -> None:
        with pytest.raises(TopologyDriftError) as exc:
            snapshot.confirm(tuple(reversed(snapshot.slices)))
        assert exc.value.before == snapshot.slices

    def test_describe(self, snapshot: TopologySnapshot) -> None:
        lines = snapshot.describe()
        assert lines[0] == f"  0 : {snapshot.slices[0]}"
        assert TopologySnapshot(slices=()).describe() == ["  <none found>"]
