"""Entry point for the mac-throttle command line tool."""

from __future__ import annotations

import argparse
import dataclasses
import json
import signal
import sys
from dataclasses import asdict
from typing import Any, Dict, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import ConfigError, ThrottleConfig
from .diagnostics import CheckLevel, Finding, diagnose, sleep_checks
from .formatting import (
    PLACEHOLDER,
    STATUS_HEADERS,
    format_assertions,
    format_process_table,
    format_snapshot,
    format_spotlight,
    format_thermal,
    render_table,
    watch_status_rows,
)
from .logsink import follow, setup_logging, tail_lines
from .processes import ProcessQueryError, ProcessTable
from .system_state import (
    HealthSnapshot,
    ProcessUsage,
    gather_assertions,
    gather_clamshell,
    gather_snapshot,
    gather_spotlight,
    gather_thermal,
    top_cpu_processes,
)
from .throttle import ThrottleController, TransitionKind


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "command", None):
        parser.print_help()
        return 0
    try:
        return args.handler(args)
    except ConfigError as exc:
        parser.error(str(exc))


def build_parser() -> argparse.ArgumentParser:
    config_opts = argparse.ArgumentParser(add_help=False)
    config_opts.add_argument("--nice", type=int, dest="target_nice", help="target nice value (default 20)")
    config_opts.add_argument("--user", nargs="+", dest="user_processes", metavar="NAME", help="processes reniced without sudo")
    config_opts.add_argument("--root", nargs="+", dest="root_processes", metavar="NAME", help="processes reniced with sudo")
    config_opts.add_argument("--log-file", help="append-only transition log")

    output_opts = argparse.ArgumentParser(add_help=False)
    output_opts.add_argument("--json", action="store_true", help="print raw data as JSON")
    output_opts.add_argument("--ui", action="store_true", help="render with rich tables")

    parser = argparse.ArgumentParser(
        prog="mac-throttle",
        description="Keep background macOS daemons at low CPU priority and check system health.",
    )
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", parents=[config_opts], help="run the throttle daemon until signalled")
    run.add_argument("--interval", type=float, help="seconds between passes (default 30)")
    run.add_argument("--status-file", help="write the per-tick status table here instead of stdout")
    run.add_argument("--no-status", action="store_true", help="do not write the per-tick status table")
    run.add_argument("--workers", type=int, help="check names on this many threads")
    run.add_argument("--quiet", action="store_true", help="do not echo log lines to stderr")
    run.set_defaults(handler=cmd_run)

    throttle = sub.add_parser("throttle", parents=[config_opts], help="run one throttle pass now")
    throttle.set_defaults(handler=cmd_throttle)

    status = sub.add_parser("status", parents=[config_opts, output_opts], help="show watched processes")
    status.set_defaults(handler=cmd_status)

    monitor = sub.add_parser("monitor", help="show the throttle log")
    monitor.add_argument("-n", "--lines", type=int, default=20, help="number of lines to show")
    monitor.add_argument("-f", "--follow", action="store_true", help="keep printing new lines")
    monitor.add_argument("--log-file", help="log file to read")
    monitor.set_defaults(handler=cmd_monitor)

    health = sub.add_parser("health", parents=[config_opts, output_opts], help="overall system health")
    health.add_argument("--top", type=int, default=5, help="number of top CPU processes")
    health.set_defaults(handler=cmd_health)

    top = sub.add_parser("top", parents=[output_opts], help="top CPU-consuming processes")
    top.add_argument("-n", "--count", type=int, default=10)
    top.set_defaults(handler=cmd_top)

    thermal = sub.add_parser("thermal", parents=[output_opts], help="thermal CPU limits")
    thermal.set_defaults(handler=cmd_thermal)

    assertions = sub.add_parser("assertions", parents=[output_opts], help="sleep assertions and blockers")
    assertions.set_defaults(handler=cmd_assertions)

    sleep_check = sub.add_parser("sleep-check", parents=[output_opts], help="check that the machine can sleep")
    sleep_check.set_defaults(handler=cmd_sleep_check)

    spotlight = sub.add_parser("spotlight", parents=[output_opts], help="Spotlight indexing status")
    spotlight.add_argument("--volume", default="/", help="volume to check (default /)")
    spotlight.set_defaults(handler=cmd_spotlight)

    return parser


def load_config(args: argparse.Namespace) -> ThrottleConfig:
    """Environment first, then command line flags on top."""
    config = ThrottleConfig.from_env()
    overrides: Dict[str, Any] = {}
    for field in dataclasses.fields(ThrottleConfig):
        value = getattr(args, field.name, None)
        if value is not None:
            overrides[field.name] = tuple(value) if isinstance(value, list) else value
    if getattr(args, "quiet", False):
        overrides["echo"] = False
    return dataclasses.replace(config, **overrides) if overrides else config


def cmd_run(args: argparse.Namespace) -> int:
    config = load_config(args)
    setup_logging(config.log_file, echo=config.echo)

    status_sink = None
    if not args.no_status:
        status_sink = open(config.status_file, "a", encoding="utf-8") if config.status_file else sys.stdout

    controller = ThrottleController(config, status_sink=status_sink)

    def _handle_signal(signum, frame):
        controller.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    try:
        controller.run()
    finally:
        if status_sink is not None and status_sink is not sys.stdout:
            status_sink.close()
    return 0


def cmd_throttle(args: argparse.Namespace) -> int:
    config = load_config(args)
    setup_logging(config.log_file, echo=False)
    controller = ThrottleController(config)
    transitions = controller.run_once()

    console = Console()
    seen = {t.name for t in transitions}
    for transition in transitions:
        if transition.kind is TransitionKind.THROTTLED:
            console.print(
                f"[green]✓[/green] Throttled {transition.name} (PID: {transition.pid}) "
                f"from {transition.old_nice} to {transition.target}"
            )
        elif transition.kind is TransitionKind.REDISCOVERED:
            console.print(f"[green]✓[/green] {transition.name} (PID: {transition.pid}) already at {transition.target}")
        else:
            console.print(f"[red]✗[/red] {transition.name} (PID: {transition.pid}): {transition.detail}")
    for name, _ in controller.watch_list:
        if name not in seen:
            console.print(f"[yellow]○[/yellow] {name} not running")
    return 1 if any(t.kind is TransitionKind.FAILED for t in transitions) else 0


def cmd_status(args: argparse.Namespace) -> int:
    config = load_config(args)
    table = ProcessTable(command_timeout=config.command_timeout)
    try:
        found = table.snapshot(config.watched_names)
    except ProcessQueryError as exc:
        print(f"Cannot read the process table: {exc}", file=sys.stderr)
        return 1

    if args.json:
        payload = {name: [asdict(proc) for proc in procs] for name, procs in found.items()}
        print(json.dumps(payload, indent=2))
        return 0

    rows = watch_status_rows(list(config.watched_names), found)
    if args.ui:
        Console().print(_rich_rows_table(f"Watched processes (target nice {min(config.target_nice, table.max_nice)})", STATUS_HEADERS, rows))
    else:
        print(render_table(STATUS_HEADERS, rows))
    return 0


def cmd_monitor(args: argparse.Namespace) -> int:
    log_file = args.log_file or ThrottleConfig.from_env().log_file
    lines = tail_lines(log_file, args.lines)
    if not lines and not args.follow:
        print(f"No log at {log_file}; is the throttle daemon running?", file=sys.stderr)
        return 1
    for line in lines:
        print(line)
    if args.follow:
        try:
            for line in follow(log_file):
                print(line, flush=True)
        except FileNotFoundError:
            print(f"No log at {log_file}; is the throttle daemon running?", file=sys.stderr)
            return 1
        except KeyboardInterrupt:
            pass
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    config = load_config(args)
    table = ProcessTable(command_timeout=config.command_timeout)
    snapshot = gather_snapshot(
        top_n=args.top,
        watched_names=config.watched_names,
        table=table,
        timeout=config.command_timeout,
    )
    findings = diagnose(snapshot, target_nice=min(config.target_nice, table.max_nice))

    if args.json:
        print(_to_json(snapshot, findings))
        return 0

    if args.ui:
        _render_rich(snapshot, findings)
        return 0

    print(format_snapshot(snapshot))
    if findings:
        print("\nPossible problems:")
        print(_format_findings(findings))
    else:
        print("\nNo problems found.")
    return 0


def cmd_top(args: argparse.Namespace) -> int:
    processes = top_cpu_processes(args.count)
    if args.json:
        print(json.dumps([asdict(proc) for proc in processes], indent=2))
    elif args.ui:
        Console().print(_rich_process_table("Top CPU", processes))
    else:
        print(format_process_table(processes))
    return 0


def cmd_thermal(args: argparse.Namespace) -> int:
    thermal = gather_thermal()
    if args.json:
        print(json.dumps(asdict(thermal), indent=2))
    elif args.ui:
        style = "bold red" if thermal.throttled else "bold green"
        Console().print(Panel(format_thermal(thermal), title="Thermal", style=style))
    else:
        print(format_thermal(thermal))
    return 0


def cmd_assertions(args: argparse.Namespace) -> int:
    assertions = gather_assertions()
    if args.json:
        payload = asdict(assertions)
        payload["active_blockers"] = assertions.active_blockers
        print(json.dumps(payload, indent=2))
    elif args.ui:
        rows = [
            [name, str(count), "yes" if name in assertions.active_blockers else ""]
            for name, count in assertions.counters.items()
        ]
        Console().print(_rich_rows_table("Sleep assertions", ["Assertion", "Count", "Blocks sleep"], rows))
    else:
        print(format_assertions(assertions))
    return 0


_CHECK_MARKS = {
    CheckLevel.OK: "[green]✓[/green]",
    CheckLevel.WARN: "[yellow]![/yellow]",
    CheckLevel.FAIL: "[red]✗[/red]",
}


def cmd_sleep_check(args: argparse.Namespace) -> int:
    checks = sleep_checks(gather_clamshell(), gather_assertions())
    if args.json:
        print(json.dumps([{"level": c.level.value, "message": c.message} for c in checks], indent=2))
    else:
        console = Console()
        if args.ui:
            console.print(Panel("Sleep readiness", style="bold cyan"))
        for check in checks:
            console.print(f"{_CHECK_MARKS[check.level]} {check.message}")
    return 1 if any(check.level is CheckLevel.FAIL for check in checks) else 0


def cmd_spotlight(args: argparse.Namespace) -> int:
    status = gather_spotlight(args.volume)
    if args.json:
        print(json.dumps(asdict(status), indent=2))
    elif args.ui:
        style = "bold green" if status.indexing else "bold yellow"
        Console().print(Panel(format_spotlight(status), title="Spotlight", style=style))
    else:
        print(format_spotlight(status))
    return 0


def _format_findings(findings: List[Finding]) -> str:
    rows = [
        [finding.title, finding.issue, finding.evidence, " / ".join(finding.solutions)]
        for finding in findings
    ]
    return render_table(["Problem", "Cause", "Evidence", "Fix"], rows)


def _to_json(snapshot: HealthSnapshot, findings: List[Finding]) -> str:
    snapshot_dict: Dict[str, Any] = asdict(snapshot)
    snapshot_dict["timestamp"] = snapshot.timestamp.isoformat()
    payload: Dict[str, Any] = {"snapshot": snapshot_dict, "findings": [asdict(f) for f in findings]}
    return json.dumps(payload, indent=2)


def _render_rich(snapshot: HealthSnapshot, findings: List[Finding]) -> None:
    console = Console()

    console.print(Panel(f"System health - {snapshot.timestamp:%Y-%m-%d %H:%M:%S}", style="bold cyan"))

    summary = Table(show_header=False, box=box.ROUNDED)
    summary.add_row(
        "CPU",
        f"{snapshot.cpu_percent:.0f}% | load (1/5/15): {snapshot.load_avg[0]:.2f}/{snapshot.load_avg[1]:.2f}/{snapshot.load_avg[2]:.2f}",
    )
    summary.add_row("Memory", f"{snapshot.memory_percent:.0f}%")
    summary.add_row("Thermal", format_thermal(snapshot.thermal))
    active = snapshot.assertions.active_blockers
    summary.add_row(
        "Sleep blockers",
        ", ".join(f"{name}={count}" for name, count in active.items()) if active else "none",
    )
    console.print(summary)

    if snapshot.watched:
        rows = watch_status_rows(list(snapshot.watched), snapshot.watched)
        console.print(_rich_rows_table("Watched processes", STATUS_HEADERS, rows))

    console.print(_rich_process_table("Top CPU", snapshot.top_cpu_processes))

    if findings:
        issues = Table(title="Possible problems", box=box.SIMPLE_HEAD)
        issues.add_column("Problem", style="bold red")
        issues.add_column("Cause")
        issues.add_column("Evidence")
        issues.add_column("Fix")
        for finding in findings:
            issues.add_row(finding.title, finding.issue, finding.evidence, "\n".join(finding.solutions))
        console.print(issues)
    else:
        console.print(Panel("No problems found.", style="bold green"))


def _rich_rows_table(title: str, headers: Sequence[str], rows: Sequence[Sequence[str]]) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    for index, header in enumerate(headers):
        table.add_column(header, justify="left" if index == 0 else "right")
    for row in rows:
        table.add_row(*row)
    return table


def _rich_process_table(title: str, processes: List[ProcessUsage]) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("PID", justify="right")
    table.add_column("Process")
    table.add_column("CPU", justify="right")
    table.add_column("Memory", justify="right")
    table.add_column("Nice", justify="right")

    if not processes:
        table.add_row("-", "No process data", "-", "-", "-")
        return table

    for proc in processes:
        table.add_row(
            str(proc.pid),
            proc.name,
            f"{proc.cpu_percent:.0f}%",
            f"{proc.memory_percent:.0f}%",
            PLACEHOLDER if proc.nice is None else str(proc.nice),
        )
    return table


if __name__ == "__main__":
    sys.exit(main())
