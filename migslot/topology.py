"""Accelerator topology discovery via the driver's device listing.

``nvidia-smi -L`` prints one line per device. MIG slices appear as indented
lines under their parent GPU::

    GPU 0: NVIDIA GH200 480GB (UUID: GPU-7c1e...)
      MIG 1g.12gb     Device  0: (UUID: MIG-6f2a...)
      MIG 1g.12gb     Device  1: (UUID: MIG-0b9d...)

The listing is treated as untrusted text: each line yields zero or one slice
id, and the driver's order becomes the canonical 0-based slice index.
"""

from __future__ import annotations

import re
import subprocess
import time
from collections.abc import Sequence
from dataclasses import dataclass, field

from loguru import logger

from migslot.constants import SLICE_LIST_COMMAND
from migslot.errors import (
    AcceleratorNotFoundError,
    AmbiguousSelectorError,
    DiscoveryError,
    TopologyDriftError,
)

log = logger.bind(component="topology")

_SLICE_LINE = re.compile(r"^\s*MIG\s.*?\(\s*UUID:\s*(?P<uuid>MIG-[0-9A-Za-z/-]+)\s*\)")


def parse_slice_line(line: str) -> str | None:
    """Extract the slice id from one listing line, or None if it is not a slice."""
    match = _SLICE_LINE.match(line)
    return match.group("uuid") if match else None


def parse_slice_listing(text: str) -> tuple[str, ...]:
    """Parse a full device listing into slice ids, in driver order."""
    slices: list[str] = []
    for line in text.splitlines():
        uuid = parse_slice_line(line)
        if uuid is not None:
            slices.append(uuid)
    return tuple(slices)


def list_accelerator_slices(
    command: Sequence[str] = SLICE_LIST_COMMAND,
    timeout: float = 30.0,
) -> tuple[str, ...]:
    """Query the driver for the currently visible accelerator slices.

    Re-queries on every call. An empty tuple means the tool ran but reported
    no slices.

    Raises:
        DiscoveryError: If the tool is missing, times out, or exits non-zero
            without any parseable slice lines.
    """
    try:
        result = subprocess.run(
            list(command),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise DiscoveryError(command, "command not found") from e
    except subprocess.TimeoutExpired as e:
        raise DiscoveryError(command, f"timed out after {timeout:.0f}s") from e
    except OSError as e:
        raise DiscoveryError(command, str(e)) from e

    slices = parse_slice_listing(result.stdout or "")

    if result.returncode != 0:
        if not slices:
            stderr = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise DiscoveryError(
                command, f"exit code {result.returncode}: {stderr or 'no output'}"
            )
        log.warning(
            "{cmd} exited with {code} but listed {n} slices; using them",
            cmd=" ".join(command), code=result.returncode, n=len(slices),
        )

    log.debug("Discovered {n} accelerator slices", n=len(slices))
    return slices


@dataclass(frozen=True, slots=True)
class TopologySnapshot:
    """Slice listing captured once and reused for a launch.

    Attributes:
        slices: Slice ids in driver order.
        captured_at: Monotonic timestamp of the capture.
    """

    slices: tuple[str, ...]
    captured_at: float = field(default_factory=time.monotonic)

    @classmethod
    def capture(cls, command: Sequence[str] = SLICE_LIST_COMMAND) -> TopologySnapshot:
        return cls(slices=list_accelerator_slices(command))

    def __len__(self) -> int:
        return len(self.slices)

    def slice_at(self, index: int) -> str:
        """Slice id for a 0-based index.

        Raises:
            AcceleratorNotFoundError: If index is outside the discovered range.
        """
        if not 0 <= index < len(self.slices):
            raise AcceleratorNotFoundError(index, self.slices)
        return self.slices[index]

    def index_of(self, selector: str) -> int:
        """Index of a slice id. Unique prefixes are accepted.

        Raises:
            AcceleratorNotFoundError: If nothing matches.
            AmbiguousSelectorError: If a prefix matches several slices.
        """
        if selector in self.slices:
            return self.slices.index(selector)
        matches = [i for i, s in enumerate(self.slices) if s.startswith(selector)]
        if not matches:
            raise AcceleratorNotFoundError(selector, self.slices)
        if len(matches) > 1:
            names = ", ".join(self.slices[i] for i in matches)
            raise AmbiguousSelectorError(f"Selector {selector!r} matches {names}")
        return matches[0]

    def confirm(self, fresh: Sequence[str]) -> None:
        """Check a newer listing against this snapshot.

        Raises:
            TopologyDriftError: If the slices or their order changed.
        """
        fresh = tuple(fresh)
        if fresh != self.slices:
            raise TopologyDriftError(self.slices, fresh)

    def describe(self) -> list[str]:
        """Human-readable "index : uuid" lines for log headers."""
        if not self.slices:
            return ["  <none found>"]
        return [f"  {i} : {uuid}" for i, uuid in enumerate(self.slices)]
