"""Per-node runtime state: slot PID files and the session's slice order.

Files under ``runtime_dir``::

    slot3.lock        flock guard for check-spawn-record on slot 3
    slot3.pid         PID of the workload currently owning slot 3
    topology.json     slice order recorded by `migslot setup`
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import psutil
from loguru import logger

from migslot.errors import SlotBusyError
from migslot.topology import TopologySnapshot

log = logger.bind(component="registry")

TOPOLOGY_FILE = "topology.json"


def _alive(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False


@dataclass(frozen=True, slots=True)
class SlotRegistry:
    """Tracks which slot is owned by which running workload."""

    runtime_dir: Path

    def _pid_file(self, index: int) -> Path:
        return self.runtime_dir / f"slot{index}.pid"

    def _lock_file(self, index: int) -> Path:
        return self.runtime_dir / f"slot{index}.lock"

    @contextlib.contextmanager
    def claim(self, index: int, force: bool = False) -> Iterator[None]:
        """Hold the slot's lock while a launch checks, spawns and records.

        Raises:
            SlotBusyError: If a live workload already owns the slot and
                force is not set.
        """
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        with self._lock_file(index).open("a") as lock:
            fcntl.flock(lock.fileno(), fcntl.LOCK_EX)
            try:
                owner = self.owner(index)
                if owner is not None:
                    if not force:
                        raise SlotBusyError(index, owner)
                    log.warning("Slot {idx}: overriding live owner PID {pid}", idx=index, pid=owner)
                yield
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def owner(self, index: int) -> int | None:
        """PID owning the slot, or None if free. Stale files are removed."""
        path = self._pid_file(index)
        try:
            pid = int(path.read_text().strip())
        except (OSError, ValueError):
            return None
        if _alive(pid):
            return pid
        log.debug("Removing stale PID file {path} (PID {pid})", path=path, pid=pid)
        with contextlib.suppress(OSError):
            path.unlink()
        return None

    def record(self, index: int, pid: int) -> None:
        path = self._pid_file(index)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(f"{pid}\n")
        os.replace(tmp, path)

    def release(self, index: int, pid: int | None = None) -> None:
        """Forget the slot's owner (only if it is still ``pid`` when given)."""
        path = self._pid_file(index)
        if pid is not None:
            try:
                if int(path.read_text().strip()) != pid:
                    return
            except (OSError, ValueError):
                return
        with contextlib.suppress(OSError):
            path.unlink()

    # -------------------------------------------------------------------------
    # Session topology
    # -------------------------------------------------------------------------

    def save_topology(self, snapshot: TopologySnapshot) -> Path:
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        path = self.runtime_dir / TOPOLOGY_FILE
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps({"slices": list(snapshot.slices)}, indent=2))
        os.replace(tmp, path)
        return path

    def load_topology(self) -> TopologySnapshot | None:
        path = self.runtime_dir / TOPOLOGY_FILE
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError):
            return None
        return TopologySnapshot(slices=tuple(str(s) for s in data.get("slices", ())))
