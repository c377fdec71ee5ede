import subprocess
from types import SimpleNamespace

import psutil
import pytest

from mac_throttle import processes
from mac_throttle.processes import (
    CorrectionError,
    PrivilegeClass,
    ProcessInstance,
    ProcessQueryError,
    ProcessTable,
)


def fake_proc(pid, name, nice, cpu=0.0):
    return SimpleNamespace(info={"pid": pid, "name": name, "nice": nice, "cpu_percent": cpu})


def patch_process_iter(monkeypatch, procs):
    def process_iter(attrs=None, ad_value=None):
        assert attrs == ProcessTable.ATTRS
        return iter(procs)

    monkeypatch.setattr(processes.psutil, "process_iter", process_iter)


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_snapshot_matches_exact_names_only(monkeypatch):
    patch_process_iter(
        monkeypatch,
        [
            fake_proc(10, "cloudd", 0, 3.0),
            fake_proc(11, "cloudd-helper", 0),
            fake_proc(12, "mds", 20),
            fake_proc(13, "cloudd", 20, 0.5),
        ],
    )
    found = ProcessTable(as_root=False).snapshot(["cloudd", "mds", "bird"])

    assert found == {
        "cloudd": [
            ProcessInstance(pid=10, name="cloudd", nice=0, cpu_percent=3.0),
            ProcessInstance(pid=13, name="cloudd", nice=20, cpu_percent=0.5),
        ],
        "mds": [ProcessInstance(pid=12, name="mds", nice=20, cpu_percent=0.0)],
        "bird": [],
    }


def test_find_returns_empty_when_not_running(monkeypatch):
    patch_process_iter(monkeypatch, [fake_proc(1, "launchd", 0)])
    assert ProcessTable(as_root=False).find("bird") == []


def test_unreadable_nice_falls_back_to_ps(monkeypatch):
    patch_process_iter(monkeypatch, [fake_proc(77, "mds_stores", None)])
    calls = []

    def run(cmd, **kwargs):
        calls.append((cmd, kwargs["timeout"]))
        return completed(stdout="  5\n")

    monkeypatch.setattr(processes.subprocess, "run", run)
    found = ProcessTable(command_timeout=2.0, as_root=False).find("mds_stores")

    assert found == [ProcessInstance(pid=77, name="mds_stores", nice=5, cpu_percent=0.0)]
    assert calls == [(["ps", "-o", "nice=", "-p", "77"], 2.0)]


def test_instance_skipped_when_nice_unknown(monkeypatch):
    patch_process_iter(monkeypatch, [fake_proc(77, "mds", None)])
    monkeypatch.setattr(processes.subprocess, "run", lambda cmd, **kwargs: completed(returncode=1))
    assert ProcessTable(as_root=False).find("mds") == []


def test_enumeration_failure_raises_query_error(monkeypatch):
    def process_iter(attrs=None, ad_value=None):
        raise psutil.Error("table unavailable")

    monkeypatch.setattr(processes.psutil, "process_iter", process_iter)
    with pytest.raises(ProcessQueryError):
        ProcessTable(as_root=False).snapshot(["mds"])


class FakePsutilProcess:
    niced = []
    error = None

    def __init__(self, pid):
        self.pid = pid

    def nice(self, value=None):
        if self.error is not None:
            raise self.error
        FakePsutilProcess.niced.append((self.pid, value))


@pytest.fixture
def fake_psutil_process(monkeypatch):
    FakePsutilProcess.niced = []
    FakePsutilProcess.error = None
    monkeypatch.setattr(processes.psutil, "Process", FakePsutilProcess)
    return FakePsutilProcess


def test_unprivileged_renice_uses_psutil(fake_psutil_process):
    ProcessTable(as_root=False).renice(42, 20, PrivilegeClass.UNPRIVILEGED)
    assert fake_psutil_process.niced == [(42, 20)]


def test_privileged_renice_as_root_uses_psutil(fake_psutil_process, monkeypatch):
    monkeypatch.setattr(processes.subprocess, "run", pytest.fail)
    ProcessTable(as_root=True).renice(42, 20, PrivilegeClass.PRIVILEGED)
    assert fake_psutil_process.niced == [(42, 20)]


@pytest.mark.parametrize(
    "error, message",
    [
        (psutil.NoSuchProcess(42), "no longer exists"),
        (psutil.AccessDenied(42), "permission denied"),
    ],
)
def test_renice_failures_raise_correction_error(fake_psutil_process, error, message):
    fake_psutil_process.error = error
    with pytest.raises(CorrectionError, match=message):
        ProcessTable(as_root=False).renice(42, 20)


def test_privileged_renice_runs_sudo(monkeypatch):
    calls = []

    def run(cmd, **kwargs):
        calls.append((cmd, kwargs["timeout"]))
        return completed()

    monkeypatch.setattr(processes.subprocess, "run", run)
    ProcessTable(command_timeout=3.0, as_root=False).renice(42, 20, PrivilegeClass.PRIVILEGED)
    assert calls == [(["sudo", "-n", "renice", "20", "-p", "42"], 3.0)]


def test_sudo_failure_reports_stderr(monkeypatch):
    monkeypatch.setattr(
        processes.subprocess,
        "run",
        lambda cmd, **kwargs: completed(returncode=1, stderr="sudo: a password is required\n"),
    )
    with pytest.raises(CorrectionError, match="a password is required"):
        ProcessTable(as_root=False).renice(42, 20, PrivilegeClass.PRIVILEGED)


def test_sudo_timeout_is_bounded(monkeypatch):
    def run(cmd, **kwargs):
        raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

    monkeypatch.setattr(processes.subprocess, "run", run)
    with pytest.raises(CorrectionError, match="timed out"):
        ProcessTable(command_timeout=1.0, as_root=False).renice(42, 20, PrivilegeClass.PRIVILEGED)


@pytest.mark.parametrize("platform, expected", [("darwin", 20), ("linux", 19)])
def test_max_nice_follows_platform(monkeypatch, platform, expected):
    monkeypatch.setattr(processes.sys, "platform", platform)
    assert ProcessTable(as_root=False).max_nice == expected


def test_max_nice_override():
    assert ProcessTable(as_root=False, max_nice=15).max_nice == 15


def test_ps_nice_parses_output(monkeypatch):
    monkeypatch.setattr(processes.subprocess, "run", lambda cmd, **kwargs: completed(stdout=" 20\n"))
    assert ProcessTable(as_root=False).ps_nice(1) == 20
