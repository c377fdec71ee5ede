from datetime import datetime

from mac_throttle.formatting import (
    format_assertions,
    format_process_table,
    format_spotlight,
    format_thermal,
    format_watch_status,
    render_table,
)
from mac_throttle.processes import ProcessInstance
from mac_throttle.system_state import ProcessUsage, SleepAssertions, SpotlightStatus, ThermalState


def test_render_table_pads_columns():
    table = render_table(["A", "BB"], [["long", "x"]])
    assert table.splitlines() == ["A    | BB", "---- | --", "long | x "]


def test_watch_status_block():
    found = {
        "cloudd": [
            ProcessInstance(pid=10, name="cloudd", nice=20, cpu_percent=0.3),
            ProcessInstance(pid=11, name="cloudd", nice=0, cpu_percent=12.0),
        ],
        "bird": [],
    }
    block = format_watch_status(["cloudd", "bird", "mds"], found, datetime(2026, 1, 31, 9, 5, 7))
    lines = block.splitlines()

    assert lines[1] == "=== 09:05:07 ==="
    assert lines[2].split() == ["PROCESS", "PID", "NICE", "CPU%"]
    assert [line.split() for line in lines[4:]] == [
        ["cloudd", "10", "20", "0.3"],
        ["cloudd", "11", "0", "12.0"],
        ["bird", "-", "-", "-"],
        ["mds", "-", "-", "-"],
    ]


def test_format_thermal_unknown():
    assert "unknown" in format_thermal(ThermalState())


def test_format_thermal_throttled():
    assert "THROTTLED" in format_thermal(ThermalState(cpu_speed_limit=70))


def test_format_assertions_without_blockers():
    text = format_assertions(SleepAssertions(counters={"PreventSystemSleep": 0}))
    assert "No sleep blockers" in text


def test_process_table_placeholder_for_unknown_nice():
    table = format_process_table([ProcessUsage(pid=88, name="mds_stores", cpu_percent=12.0, memory_percent=0.4, nice=None)])
    assert table.splitlines()[2].split(" | ")[-1].strip() == "-"


def test_format_spotlight():
    assert format_spotlight(SpotlightStatus("/", True, "Indexing enabled.")) == "Spotlight indexing on /: enabled"
    assert format_spotlight(SpotlightStatus("/", None, "Error: unknown indexing state.")) == (
        "Spotlight indexing on /: unknown (Error: unknown indexing state.)"
    )
    assert format_spotlight(SpotlightStatus("", None, "mdutil unavailable")) == "Spotlight: unknown (mdutil unavailable)"
