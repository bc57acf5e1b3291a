"""Command-line interface.

    migslot launch --slot 2 --input stmv.namd --output test2.out
    migslot launch --accelerator MIG-6f2a --output run.log -- ./my_app --flag
    sudo migslot setup
    migslot verify --slot 2
    migslot slices
    migslot plan
    migslot stop --slot 2

Exit codes: 0 success, 1 usage error, 2 launch/precondition failure.
"""

from __future__ import annotations

import argparse
from collections.abc import Sequence
from functools import partial
from pathlib import Path
from typing import NoReturn

from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from migslot.config import NodeConfig, resolve_node_config
from migslot.constants import EXIT_FAILURE, EXIT_OK, CommPolicy, LauncherMode, MpiProtocol
from migslot.errors import MigslotError, PreconditionError, UsageError
from migslot.launcher import build_workload_argv, locate_executable
from migslot.logging import LogConfig, setup_logging, teardown_logging
from migslot.orchestrator import CommandFactory, LaunchRequest, Orchestrator, stop_slot
from migslot.partition import Slot
from migslot.registry import SlotRegistry
from migslot.topology import TopologySnapshot

log = logger.bind(component="cli")

out = Console()
err = Console(stderr=True)


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of exiting with argparse's code 2."""

    def error(self, message: str) -> NoReturn:
        raise UsageError(f"{self.prog}: {message}")


def _table(title: str, *columns: str) -> Table:
    table = Table(
        title=title,
        title_style="bold",
        title_justify="left",
        show_edge=False,
        box=None,
        padding=(0, 2),
        header_style="bold bright_black",
    )
    for column in columns:
        table.add_column(column)
    return table


def _mark(ok: bool) -> str:
    return "[green]ok[/green]" if ok else "[red]mismatch[/red]"


# =============================================================================
# Parser
# =============================================================================


def _add_geometry(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("partition overrides")
    group.add_argument("--total-cores", type=int, default=None)
    group.add_argument("--slots", dest="slot_count", type=int, default=None)
    group.add_argument("--cores-per-slot", type=int, default=None)
    group.add_argument(
        "--comm-policy", default=None, choices=[p.value for p in CommPolicy],
    )
    group.add_argument("--cgroup-base", type=Path, default=None)


def build_parser() -> _Parser:
    parser = _Parser(prog="migslot", description="Run workloads in isolated MIG slots")
    parser.add_argument("--config-dir", type=Path, default=None,
                        help="Directory holding migslot.toml (default: cwd)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="-v for INFO, -vv for DEBUG")
    parser.add_argument("--log-file", default=None)

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    launch = sub.add_parser("launch", help="Start a workload in one slot")
    select = launch.add_mutually_exclusive_group(required=True)
    select.add_argument("-s", "--slot", type=int, default=None, help="0-based slot index")
    select.add_argument("-a", "--accelerator", default=None,
                        help="Slice id (or unique prefix) selecting the slot")
    launch.add_argument("-o", "--output", type=Path, required=True)
    launch.add_argument("-i", "--input", default=None,
                        help="Workload input file (builds the default workload command)")
    launch.add_argument("--no-pin", dest="pin", action="store_false",
                        help="Do not export the slot's slice id")
    launch.add_argument("--force", action="store_true",
                        help="Launch even if the slot is in use")
    launch.add_argument("--wait", action="store_true",
                        help="Wait for the workload and exit with its status")
    launch.add_argument("--launcher", default=None, choices=[m.value for m in LauncherMode])
    launch.add_argument("--mpi", default=None, choices=[m.value for m in MpiProtocol])
    _add_geometry(launch)
    launch.add_argument("cmd", nargs=argparse.REMAINDER,
                        help="Explicit command after '--' (replaces the default workload)")

    setup = sub.add_parser("setup", help="Create the parent group and one group per slot")
    setup.add_argument("--no-discover", dest="discover", action="store_false",
                       help="Do not match the slot count to discovered slices")
    _add_geometry(setup)

    verify = sub.add_parser("verify", help="Compare slot groups with the partition table")
    verify.add_argument("-s", "--slot", type=int, default=None)
    _add_geometry(verify)

    sub.add_parser("slices", help="List discovered accelerator slices")

    plan = sub.add_parser("plan", help="Show the partition table")
    _add_geometry(plan)

    stop = sub.add_parser("stop", help="Stop the workload owning a slot")
    stop.add_argument("-s", "--slot", type=int, required=True)
    stop.add_argument("--grace", type=float, default=None,
                      help="Seconds between SIGTERM and SIGKILL")

    return parser


def _config(args: argparse.Namespace) -> NodeConfig:
    config = resolve_node_config(project_dir=args.config_dir)
    return config.with_overrides(
        total_cores=getattr(args, "total_cores", None),
        slot_count=getattr(args, "slot_count", None),
        cores_per_slot=getattr(args, "cores_per_slot", None),
        comm_policy=getattr(args, "comm_policy", None),
        cgroup_base=getattr(args, "cgroup_base", None),
        launcher_mode=getattr(args, "launcher", None),
        mpi=getattr(args, "mpi", None),
    )


# =============================================================================
# Commands
# =============================================================================


def _workload_command(config: NodeConfig, input_path: str, slot: Slot) -> list[str]:
    # Resolved inside the launch so a missing binary is reported in the output log.
    exe = locate_executable(config.executable, config.executable_dir_var)
    return build_workload_argv(exe, slot, input_path, config.devices)


def _exit_status(code: int | None) -> int:
    """Shell-style status for a finished workload: killed by signal N gives 128 + N."""
    if code is None:
        return EXIT_FAILURE
    return 128 - code if code < 0 else code


def cmd_launch(args: argparse.Namespace) -> int:
    config = _config(args)

    explicit = list(args.cmd)
    if explicit and explicit[0] == "--":
        explicit = explicit[1:]

    command: Sequence[str] | CommandFactory
    if explicit:
        command = explicit
    elif args.input is None:
        raise UsageError("launch: --input is required unless a command follows '--'")
    else:
        command = partial(_workload_command, config, args.input)

    orchestrator = Orchestrator(config)
    handle = orchestrator.launch(LaunchRequest(
        command=command,
        output=args.output,
        slot_index=args.slot,
        accelerator=args.accelerator,
        pin_accelerator=args.pin,
        force=args.force,
    ))

    out.print(
        f"Slot {handle.slot.index} (cores {handle.slot.cores}, "
        f"mems {handle.slot.memory_domain}) PID {handle.pid} "
        f"via {handle.strategy} ({handle.launcher}) -> {escape(str(handle.output))}",
        soft_wrap=True,
    )

    if not args.wait:
        handle.close()
        return EXIT_OK

    try:
        code = _exit_status(handle.wait())
    except KeyboardInterrupt:
        code = _exit_status(handle.terminate())
    handle.close()
    out.print(f"Slot {handle.slot.index} PID {handle.pid} exited with {code}")
    return code


def cmd_setup(args: argparse.Namespace) -> int:
    config = _config(args)
    plan = config.plan
    cgroups = config.cgroups
    registry = SlotRegistry(config.runtime_dir)

    if args.discover:
        snapshot = TopologySnapshot.capture()
        if not len(snapshot):
            raise PreconditionError("No accelerator slices found; configure MIG first")
        for line in snapshot.describe():
            out.print(line, markup=False)
        if len(snapshot) != plan.slot_count:
            log.warning("Expected {want} slices, found {got}; provisioning {got} slots",
                        want=plan.slot_count, got=len(snapshot))
            err.print(f"[yellow]warning:[/yellow] expected {plan.slot_count} slices, "
                      f"found {len(snapshot)}; provisioning {len(snapshot)} slots")
            plan = plan.with_slot_count(len(snapshot))
        registry.save_topology(snapshot)

    for warning in cgroups.init_parent(config.total_cores):
        err.print(f"[yellow]warning:[/yellow] {escape(warning)}", soft_wrap=True)

    report = cgroups.create_all(plan.slots())

    table = _table(f"Slot groups under {cgroups.base}", "Slot", "Path", "CPUs", "MEMs", "Status")
    for state in report.created:
        table.add_row(
            state.path.name.removeprefix(cgroups.prefix),
            str(state.path),
            state.effective_cpus or "?",
            state.effective_mems or "?",
            _mark(state.ok),
        )
    for failure in report.failures:
        table.add_row(str(failure.slot), str(failure.path), "-", "-", f"[red]{escape(failure.reason)}[/red]")
    out.print(table)

    for warning in report.warnings:
        err.print(f"[yellow]warning:[/yellow] {escape(warning)}", soft_wrap=True)
    for state in report.mismatched:
        err.print(f"[red]error:[/red] {escape(str(state.path))} does not match the partition; "
                  "launches in this slot will be refused", soft_wrap=True)

    unused = plan.unused_cores()
    if unused is not None:
        out.print(f"Cores {unused} belong to no slot")

    return EXIT_OK if report.ok else EXIT_FAILURE


def cmd_verify(args: argparse.Namespace) -> int:
    config = _config(args)
    plan = config.plan
    cgroups = config.cgroups
    slots = [plan.resolve(args.slot)] if args.slot is not None else list(plan.slots())

    table = _table("Slot isolation", "Slot", "Want CPUs", "Got CPUs",
                   "Want MEMs", "Got MEMs", "PIDs", "Status")
    healthy = True
    for slot in slots:
        state = cgroups.verify(slot)
        if not state.exists:
            status = "[red]missing[/red]"
        else:
            status = _mark(state.ok)
        healthy = healthy and state.ok
        table.add_row(
            str(slot.index),
            state.expected_cpus,
            state.effective_cpus or "-",
            state.expected_mems,
            state.effective_mems or "-",
            str(len(cgroups.members(slot))) if state.exists else "-",
            status,
        )
    out.print(table)
    return EXIT_OK if healthy else EXIT_FAILURE


def cmd_slices(args: argparse.Namespace) -> int:
    snapshot = TopologySnapshot.capture()
    table = _table("Accelerator slices", "Index", "Slice id")
    for i, uuid in enumerate(snapshot.slices):
        table.add_row(str(i), uuid)
    if not len(snapshot):
        table.add_row("-", "<none found>")
    out.print(table)
    return EXIT_OK


def cmd_plan(args: argparse.Namespace) -> int:
    config = _config(args)
    plan = config.plan
    table = _table(
        f"{plan.total_cores} cores, {plan.slot_count} slots x {plan.cores_per_slot} "
        f"({plan.policy})",
        "Slot", "Cores", "MEMs", "Workers", "Count", "Comm", "Cgroup",
    )
    for slot in plan.slots():
        table.add_row(
            str(slot.index),
            slot.cores.cpulist,
            slot.memory_domain,
            slot.layout.workers.cpulist,
            str(slot.layout.worker_count),
            str(slot.layout.comm_core),
            str(config.cgroups.path_for(slot)),
        )
    out.print(table)
    unused = plan.unused_cores()
    if unused is not None:
        out.print(f"Unused cores: {unused}")
    return EXIT_OK


def cmd_stop(args: argparse.Namespace) -> int:
    config = _config(args)
    kwargs = {"grace": args.grace} if args.grace is not None else {}
    pid = stop_slot(config, args.slot, **kwargs)
    if pid is None:
        out.print(f"Slot {args.slot} is idle")
    else:
        out.print(f"Stopped slot {args.slot} (PID {pid})")
    return EXIT_OK


COMMANDS = {
    "launch": cmd_launch,
    "setup": cmd_setup,
    "verify": cmd_verify,
    "slices": cmd_slices,
    "plan": cmd_plan,
    "stop": cmd_stop,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    handlers: list[int] = []
    try:
        args = parser.parse_args(argv)
        handlers = setup_logging(LogConfig.from_verbosity(args.verbose, file=args.log_file))
        return COMMANDS[args.command](args)
    except UsageError as e:
        err.print(f"[red]usage error:[/red] {escape(str(e))}", soft_wrap=True)
        err.print(parser.format_usage().rstrip(), markup=False, soft_wrap=True)
        return e.exit_code
    except MigslotError as e:
        err.print(f"[red]error:[/red] {escape(str(e))}", soft_wrap=True)
        return e.exit_code
    except OSError as e:
        log.opt(exception=e).debug("Unhandled OS error")
        err.print(f"[red]error:[/red] {escape(str(e))}", soft_wrap=True)
        return EXIT_FAILURE
    finally:
        teardown_logging(handlers)
