"""Turn a health snapshot into findings with remediation tips."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from .system_state import HealthSnapshot, ProcessUsage, SleepAssertions, ThermalState

CPU_HOG_PERCENT = 80.0


@dataclass
class Finding:
    title: str
    issue: str
    evidence: str
    solutions: Sequence[str]


class CheckLevel(Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class SleepCheck:
    level: CheckLevel
    message: str


def sleep_checks(lid_causes_sleep: Optional[bool], assertions: SleepAssertions) -> List[SleepCheck]:
    """Read-only sleep readiness: lid behaviour, sleep assertions and audio."""
    checks: List[SleepCheck] = []
    if lid_causes_sleep is None:
        checks.append(SleepCheck(CheckLevel.WARN, "Lid close behaviour unknown (ioreg unavailable)"))
    elif lid_causes_sleep:
        checks.append(SleepCheck(CheckLevel.OK, "Lid close will cause sleep"))
    else:
        checks.append(SleepCheck(CheckLevel.FAIL, "Lid close will NOT cause sleep (SMC reset needed)"))

    for name, level_when_active in (
        ("PreventSystemSleep", CheckLevel.FAIL),
        ("PreventUserIdleSystemSleep", CheckLevel.WARN),
    ):
        count = assertions.counters.get(name)
        if count is None:
            checks.append(SleepCheck(CheckLevel.WARN, f"{name} state unknown (pmset unavailable)"))
        elif count == 0:
            checks.append(SleepCheck(CheckLevel.OK, f"No {name} assertions"))
        else:
            checks.append(SleepCheck(level_when_active, f"{name} is active ({count})"))

    if assertions.audio:
        checks.append(SleepCheck(CheckLevel.WARN, "Audio assertions present"))
    else:
        checks.append(SleepCheck(CheckLevel.OK, "No audio assertions"))
    return checks


def diagnose(snapshot: HealthSnapshot, target_nice: Optional[int] = None) -> List[Finding]:
    """Analyze a health snapshot and return likely problems with fixes."""
    findings: List[Finding] = []

    thermal_note = _diagnose_thermal(snapshot.thermal)
    if thermal_note:
        findings.append(thermal_note)
    findings.extend(_diagnose_sleep(snapshot.assertions))
    lid_note = _diagnose_lid(snapshot.lid_causes_sleep)
    if lid_note:
        findings.append(lid_note)
    findings.extend(_diagnose_cpu_hogs(snapshot.top_cpu_processes))
    if target_nice is not None:
        findings.extend(_diagnose_watched(snapshot, target_nice))

    return findings


def _diagnose_thermal(thermal: ThermalState) -> Optional[Finding]:
    if not thermal.throttled:
        return None
    return Finding(
        title="Thermal throttling",
        issue="macOS has capped CPU speed to shed heat.",
        evidence=f"CPU_Speed_Limit is {thermal.cpu_speed_limit}% (100% means no limit).",
        solutions=[
            "Check the top CPU processes and quit or renice the heaviest ones.",
            "Keep the vents clear and avoid soft surfaces under the laptop.",
            "Use a single-cable charger on the right-hand ports on Intel MacBook Pros.",
        ],
    )


def _diagnose_sleep(assertions: SleepAssertions) -> List[Finding]:
    active = assertions.active_blockers
    if not active:
        return []
    owners = ", ".join(f"{b.process} (pid {b.pid}): {b.reason}" for b in assertions.blockers[:5])
    counts = ", ".join(f"{name}={count}" for name, count in active.items())
    solutions = [
        "Quit the owning applications listed above, or run `pmset -g assertions` for the full list.",
        "Disable Power Nap and wake for network access if the machine never sleeps.",
    ]
    if assertions.audio or any("audio" in (b.process + b.reason).lower() for b in assertions.blockers):
        solutions.append("Stop audio playback; an open audio stream keeps the system awake.")
    return [
        Finding(
            title="Sleep blocked",
            issue="One or more processes are preventing the system from sleeping.",
            evidence=f"{counts}. {owners}" if owners else f"{counts}.",
            solutions=solutions,
        )
    ]


def _diagnose_lid(lid_causes_sleep: Optional[bool]) -> Optional[Finding]:
    if lid_causes_sleep is not False:
        return None
    return Finding(
        title="Lid close does not sleep",
        issue="Closing the lid will not put the machine to sleep.",
        evidence="ioreg reports AppleClamshellCausesSleep = No.",
        solutions=[
            "Disconnect external displays; clamshell mode keeps the machine awake.",
            "Reset the SMC if no display is attached.",
        ],
    )


def _diagnose_cpu_hogs(processes: Sequence[ProcessUsage]) -> List[Finding]:
    hogs = [proc for proc in processes if proc.cpu_percent >= CPU_HOG_PERCENT]
    if not hogs:
        return []
    return [
        Finding(
            title="CPU hog",
            issue="A process is monopolising at least one core.",
            evidence=_top_process_summary(hogs),
            solutions=[
                "Quit the process in Activity Monitor, or `kill <pid>` from a terminal.",
                "Add background daemons to the throttle watch list so they run at low priority.",
            ],
        )
    ]


def _diagnose_watched(snapshot: HealthSnapshot, target_nice: int) -> List[Finding]:
    drifted = [
        proc
        for procs in snapshot.watched.values()
        for proc in procs
        if proc.nice != target_nice
    ]
    if not drifted:
        return []
    listing = ", ".join(f"{proc.name} (pid {proc.pid}, nice {proc.nice})" for proc in drifted)
    return [
        Finding(
            title="Watched process not throttled",
            issue=f"Watched processes are running above nice {target_nice}.",
            evidence=f"{listing}.",
            solutions=[
                "Check that the throttle daemon is running: `mac-throttle monitor`.",
                "Run `mac-throttle throttle` for an immediate pass.",
            ],
        )
    ]


def _top_process_summary(processes: Sequence[ProcessUsage]) -> str:
    if not processes:
        return "No heavy processes identified."
    offenders = ", ".join(
        f"{proc.name} (pid {proc.pid}, {proc.cpu_percent:.0f}% CPU"
        + (f", nice {proc.nice})" if proc.nice is not None else ")")
        for proc in processes[:3]
    )
    return f"Top consumers: {offenders}."
