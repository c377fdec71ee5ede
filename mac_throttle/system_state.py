"""Collect point-in-time health data: CPU, thermal limits and sleep blockers."""

from __future__ import annotations

import os
import re
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import psutil

from .processes import ProcessInstance, ProcessQueryError, ProcessTable

SLEEP_BLOCKING_ASSERTIONS = ("PreventSystemSleep", "PreventUserIdleSystemSleep")

_THERM_RE = re.compile(r"^\s*(CPU_\w+)\s*=\s*(\d+)", re.MULTILINE)
_COUNTER_RE = re.compile(r"^\s+(\w+)\s+(\d+)\s*$")
_OWNER_RE = re.compile(r"pid (\d+)\((.+?)\):.*?\b(\w+)\s+named:\s*\"(.*?)\"")
_CLAMSHELL_RE = re.compile(r"\"AppleClamshellCausesSleep\"\s*=\s*(Yes|No)\b")


@dataclass
class ProcessUsage:
    pid: int
    name: str
    cpu_percent: float
    memory_percent: float
    nice: Optional[int]


@dataclass
class ThermalState:
    cpu_speed_limit: Optional[int] = None
    scheduler_limit: Optional[int] = None
    available_cpus: Optional[int] = None

    @property
    def throttled(self) -> bool:
        return self.cpu_speed_limit is not None and self.cpu_speed_limit < 100


@dataclass
class SleepBlocker:
    pid: int
    process: str
    assertion: str
    reason: str


@dataclass
class SleepAssertions:
    counters: Dict[str, int] = field(default_factory=dict)
    blockers: List[SleepBlocker] = field(default_factory=list)
    # Any line mentioning audio, whatever its section.
    audio: List[str] = field(default_factory=list)

    @property
    def active_blockers(self) -> Dict[str, int]:
        return {
            name: self.counters[name]
            for name in SLEEP_BLOCKING_ASSERTIONS
            if self.counters.get(name, 0) > 0
        }


@dataclass
class HealthSnapshot:
    timestamp: datetime
    cpu_percent: float
    load_avg: Tuple[float, float, float]
    cpu_count: int
    memory_percent: float
    thermal: ThermalState
    assertions: SleepAssertions
    top_cpu_processes: List[ProcessUsage] = field(default_factory=list)
    watched: Dict[str, List[ProcessInstance]] = field(default_factory=dict)
    lid_causes_sleep: Optional[bool] = None


@dataclass
class SpotlightStatus:
    volume: str
    indexing: Optional[bool]
    detail: str


def run_command(cmd: Sequence[str], timeout: float = 5.0) -> str:
    """Run a read-only system tool and return stdout, or an empty string if it is unavailable."""
    try:
        result = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired):
        return ""
    if result.returncode != 0:
        return ""
    return result.stdout


def run_pmset(*args: str, timeout: float = 5.0) -> str:
    return run_command(["pmset", *args], timeout=timeout)


def parse_thermal(output: str) -> ThermalState:
    values = {key: int(value) for key, value in _THERM_RE.findall(output)}
    return ThermalState(
        cpu_speed_limit=values.get("CPU_Speed_Limit"),
        scheduler_limit=values.get("CPU_Scheduler_Limit"),
        available_cpus=values.get("CPU_Available_CPUs"),
    )


def parse_assertions(output: str) -> SleepAssertions:
    """Parse ``pmset -g assertions`` into counters and per-process sleep blockers."""
    assertions = SleepAssertions()
    section = None
    for line in output.splitlines():
        stripped = line.strip()
        if "audio" in stripped.lower():
            assertions.audio.append(stripped)
        if stripped.startswith("Assertion status system-wide"):
            section = "counters"
            continue
        if stripped.startswith("Listed by owning process"):
            section = "owners"
            continue
        if section == "counters":
            match = _COUNTER_RE.match(line)
            if match:
                assertions.counters[match.group(1)] = int(match.group(2))
        elif section == "owners":
            match = _OWNER_RE.search(line)
            if match and match.group(3) in SLEEP_BLOCKING_ASSERTIONS:
                assertions.blockers.append(
                    SleepBlocker(
                        pid=int(match.group(1)),
                        process=match.group(2),
                        assertion=match.group(3),
                        reason=match.group(4),
                    )
                )
    return assertions


def parse_clamshell(output: str) -> Optional[bool]:
    """Read ``AppleClamshellCausesSleep`` from ``ioreg`` output; ``None`` when absent."""
    match = _CLAMSHELL_RE.search(output)
    if not match:
        return None
    return match.group(1) == "Yes"


def parse_spotlight(output: str) -> SpotlightStatus:
    """Parse ``mdutil -s <volume>``.

    The tool prints the volume on one line and the indexing state on the
    next, e.g. ``/:`` then ``Indexing enabled.``
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        return SpotlightStatus(volume="", indexing=None, detail="mdutil unavailable")
    volume = lines[0].rstrip(":")
    detail = " ".join(lines[1:])
    lowered = detail.lower()
    if "indexing enabled" in lowered:
        indexing: Optional[bool] = True
    elif "indexing disabled" in lowered:
        indexing = False
    else:
        indexing = None
    return SpotlightStatus(volume=volume, indexing=indexing, detail=detail)


def gather_clamshell(timeout: float = 5.0) -> Optional[bool]:
    return parse_clamshell(run_command(["ioreg", "-r", "-k", "AppleClamshellCausesSleep"], timeout=timeout))


def gather_spotlight(volume: str = "/", timeout: float = 5.0) -> SpotlightStatus:
    return parse_spotlight(run_command(["mdutil", "-s", volume], timeout=timeout))


def gather_thermal(timeout: float = 5.0) -> ThermalState:
    return parse_thermal(run_pmset("-g", "therm", timeout=timeout))


def gather_assertions(timeout: float = 5.0) -> SleepAssertions:
    return parse_assertions(run_pmset("-g", "assertions", timeout=timeout))


def gather_snapshot(
    top_n: int = 5,
    watched_names: Sequence[str] = (),
    table: Optional[ProcessTable] = None,
    timeout: float = 5.0,
) -> HealthSnapshot:
    """Collect a snapshot of the current system health."""
    cpu_count = psutil.cpu_count() or 0
    load_avg = os.getloadavg() if hasattr(os, "getloadavg") else (0.0, 0.0, 0.0)
    cpu_percent = psutil.cpu_percent(interval=0.3)
    memory = psutil.virtual_memory()

    table = table or ProcessTable(command_timeout=timeout)
    processes = list(psutil.process_iter())
    _prime_cpu_percent(processes)
    usages = _process_usage(processes, table)

    watched: Dict[str, List[ProcessInstance]] = {}
    if watched_names:
        try:
            watched = table.snapshot(watched_names)
        except ProcessQueryError:
            watched = {name: [] for name in watched_names}

    return HealthSnapshot(
        timestamp=datetime.now(),
        cpu_percent=cpu_percent,
        load_avg=load_avg,
        cpu_count=cpu_count,
        memory_percent=memory.percent,
        thermal=gather_thermal(timeout),
        assertions=gather_assertions(timeout),
        top_cpu_processes=sorted(usages, key=lambda p: p.cpu_percent, reverse=True)[:top_n],
        watched=watched,
        lid_causes_sleep=gather_clamshell(timeout),
    )


def top_cpu_processes(top_n: int = 10, table: Optional[ProcessTable] = None) -> List[ProcessUsage]:
    processes = list(psutil.process_iter())
    _prime_cpu_percent(processes)
    usages = _process_usage(processes, table or ProcessTable())
    return sorted(usages, key=lambda p: p.cpu_percent, reverse=True)[:top_n]


def _prime_cpu_percent(processes: Iterable[psutil.Process]) -> None:
    for proc in processes:
        try:
            proc.cpu_percent(None)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    time.sleep(0.1)


def _process_usage(processes: Iterable[psutil.Process], table: ProcessTable) -> List[ProcessUsage]:
    usage: List[ProcessUsage] = []
    for proc in processes:
        try:
            with proc.oneshot():
                try:
                    nice: Optional[int] = proc.nice()
                except psutil.AccessDenied:
                    # Other users' processes on macOS
                    nice = table.ps_nice(proc.pid)
                usage.append(
                    ProcessUsage(
                        pid=proc.pid,
                        name=proc.name(),
                        cpu_percent=proc.cpu_percent(None),
                        memory_percent=proc.memory_percent(),
                        nice=nice,
                    )
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return usage
