"""Console-friendly formatting utilities."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence

from .processes import ProcessInstance
from .system_state import HealthSnapshot, ProcessUsage, SleepAssertions, SpotlightStatus, ThermalState

PLACEHOLDER = "-"
STATUS_HEADERS = ("PROCESS", "PID", "NICE", "CPU%")


def render_table(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    widths = [len(h) for h in headers]
    for row in rows:
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], len(cell))
    lines = []
    lines.append(_format_row(headers, widths))
    lines.append(_format_row(["-" * w for w in widths], widths))
    for row in rows:
        lines.append(_format_row(row, widths))
    return "\n".join(lines)


def watch_status_rows(
    names: Sequence[str], found: Mapping[str, Sequence[ProcessInstance]]
) -> list[list[str]]:
    """One row per running instance, or a placeholder row per absent name."""
    rows = []
    for name in names:
        instances = found.get(name) or []
        if not instances:
            rows.append([name, PLACEHOLDER, PLACEHOLDER, PLACEHOLDER])
            continue
        for proc in instances:
            rows.append([name, str(proc.pid), str(proc.nice), f"{proc.cpu_percent:.1f}"])
    return rows


def format_watch_status(
    names: Sequence[str],
    found: Mapping[str, Sequence[ProcessInstance]],
    when: Optional[datetime] = None,
) -> str:
    """Fixed-width status block written to the status sink each tick."""
    when = when or datetime.now()
    lines = [
        "",
        f"=== {when:%H:%M:%S} ===",
        "%-20s %8s %8s %8s" % STATUS_HEADERS,
        "-" * 48,
    ]
    for row in watch_status_rows(names, found):
        lines.append("%-20s %8s %8s %8s" % tuple(row))
    return "\n".join(lines)


def format_process_table(processes: Iterable[ProcessUsage]) -> str:
    rows = [
        [
            str(proc.pid),
            proc.name,
            f"{proc.cpu_percent:.1f}%",
            f"{proc.memory_percent:.1f}%",
            PLACEHOLDER if proc.nice is None else str(proc.nice),
        ]
        for proc in processes
    ]
    return render_table(["PID", "PROCESS", "CPU", "MEM", "NICE"], rows) if rows else "No process data"


def format_thermal(thermal: ThermalState) -> str:
    if thermal.cpu_speed_limit is None:
        return "CPU speed limit: unknown (pmset unavailable)"
    state = "THROTTLED" if thermal.throttled else "no throttling"
    lines = [f"CPU speed limit: {thermal.cpu_speed_limit}% ({state})"]
    if thermal.scheduler_limit is not None:
        lines.append(f"CPU scheduler limit: {thermal.scheduler_limit}%")
    if thermal.available_cpus is not None:
        lines.append(f"Available CPUs: {thermal.available_cpus}")
    return "\n".join(lines)


def format_assertions(assertions: SleepAssertions) -> str:
    if not assertions.counters:
        return "Sleep assertions: unknown (pmset unavailable)"
    rows = [
        [name, str(count), "yes" if name in assertions.active_blockers else ""]
        for name, count in assertions.counters.items()
    ]
    lines = [render_table(["ASSERTION", "COUNT", "BLOCKS SLEEP"], rows)]
    if assertions.blockers:
        lines.append("Sleep blockers:")
        lines.extend(
            f"  {b.process} (pid {b.pid}) {b.assertion}: {b.reason}" for b in assertions.blockers
        )
    else:
        lines.append("No sleep blockers")
    return "\n".join(lines)


def format_spotlight(status: SpotlightStatus) -> str:
    if not status.volume:
        return "Spotlight: unknown (mdutil unavailable)"
    if status.indexing is None:
        return f"Spotlight indexing on {status.volume}: unknown ({status.detail})"
    state = "enabled" if status.indexing else "disabled"
    return f"Spotlight indexing on {status.volume}: {state}"


def format_snapshot(snapshot: HealthSnapshot) -> str:
    lines = [
        f"Time: {snapshot.timestamp:%Y-%m-%d %H:%M:%S}",
        f"CPU: {snapshot.cpu_percent:.0f}% | Load (1/5/15): {snapshot.load_avg[0]:.2f} / {snapshot.load_avg[1]:.2f} / {snapshot.load_avg[2]:.2f} ({snapshot.cpu_count} cores)",
        f"Memory: {snapshot.memory_percent:.0f}%",
        format_thermal(snapshot.thermal),
    ]
    active = snapshot.assertions.active_blockers
    if active:
        lines.append("Sleep blockers: " + ", ".join(f"{name}={count}" for name, count in active.items()))
    elif snapshot.assertions.counters:
        lines.append("Sleep blockers: none")
    if snapshot.lid_causes_sleep is not None:
        lines.append("Lid close sleeps: " + ("yes" if snapshot.lid_causes_sleep else "NO"))
    if snapshot.watched:
        lines.append("Watched processes:")
        lines.append(render_table(STATUS_HEADERS, watch_status_rows(list(snapshot.watched), snapshot.watched)))
    lines.append("Top CPU:")
    lines.append(format_process_table(snapshot.top_cpu_processes))
    return "\n".join(lines)


def _format_row(row: Sequence[str], widths: Sequence[int]) -> str:
    padded = [cell.ljust(width) for cell, width in zip(row, widths)]
    return " | ".join(padded)
