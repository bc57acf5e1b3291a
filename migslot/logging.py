"""Loguru setup for the migslot CLI and for programs embedding the orchestrator.

Every module logs through ``logger.bind(component=...)`` and adds ``slot``,
``strategy``, ``pid`` or ``cgroup`` as it learns them. The package logger
stays silent until ``setup_logging`` turns it on, so importing migslot into
another program never prints anything.

Two handlers are available:

* stderr, for the operator running ``migslot``. At WARNING and INFO it shows
  only the time, level, slot context and message; at DEBUG it also names the
  emitting function.
* a history file (``--log-file``), always at DEBUG. Several ``migslot launch``
  processes started side by side can append to the same file.

Example:
    from migslot.logging import LogConfig, setup_logging, teardown_logging

    handlers = setup_logging(LogConfig.from_verbosity(1, file="/tmp/migslot.log"))
    try:
        orchestrator.launch(request)
    finally:
        teardown_logging(handlers)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger

logger.disable("migslot")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "TRACE"]

_CONTEXT_KEYS = ("component", "slot", "strategy", "pid", "cgroup")
_VERBOSITY: tuple[LogLevel, ...] = ("WARNING", "INFO", "DEBUG")


def _format_context(record: Any) -> str:
    extra = record.get("extra", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


OPERATOR_FORMAT = (
    "<green>{time:HH:mm:ss}</green> <level>{level: <7}</level>"
    "<dim>{extra[_ctx]}</dim> {message}"
)

DEBUG_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>"
    "<dim>{extra[_ctx]}</dim> - "
    "<level>{message}</level>"
)

HISTORY_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {process} | {level: <8} | "
    "{name}:{function}:{line}{extra[_ctx]} - {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Which handlers to install.

    Attributes:
        level: Threshold for the stderr handler.
        file: History file shared across launches; None for stderr only.
        console: Install the stderr handler.
        rotation: When the history file rolls over (e.g. "50 MB", "1 day").
        retention: Rolled-over history files to keep.
    """

    level: LogLevel = "WARNING"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10

    @classmethod
    def from_verbosity(cls, verbose: int, file: str | None = None) -> LogConfig:
        """Map a count of ``-v`` flags to a threshold: none, -v, -vv."""
        return cls(level=_VERBOSITY[min(max(verbose, 0), len(_VERBOSITY) - 1)], file=file)


def setup_logging(config: LogConfig) -> list[int]:
    """Install the configured handlers and return their ids for teardown."""
    logger.remove()
    logger.enable("migslot")
    logger.configure(patcher=lambda r: r["extra"].update(_ctx=_format_context(r)))

    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(logger.add(
            sys.stderr,
            level=config.level,
            format=DEBUG_FORMAT if config.level in ("DEBUG", "TRACE") else OPERATOR_FORMAT,
            colorize=True,
            filter="migslot",
        ))

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(logger.add(
            config.file,
            level="DEBUG",
            format=HISTORY_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            diagnose=False,
            enqueue=True,
            filter="migslot",
        ))

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove the handlers (flushing the history file) and silence the package again."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("migslot")
