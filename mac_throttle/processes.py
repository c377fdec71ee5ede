"""Find watched processes by exact name and adjust their nice value."""

from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

import psutil


class PrivilegeClass(Enum):
    UNPRIVILEGED = "unprivileged"
    PRIVILEGED = "privileged"


@dataclass(frozen=True)
class ProcessInstance:
    pid: int
    name: str
    nice: int
    cpu_percent: float


class ProcessQueryError(RuntimeError):
    """The process table could not be enumerated at all."""


class CorrectionError(RuntimeError):
    """A renice request did not take effect."""


class ProcessTable:
    """Process table queries and priority changes backed by psutil.

    Only the ``ps`` fallback and the ``sudo renice`` path leave the process,
    and both are bounded by ``command_timeout``.
    """

    ATTRS = ["pid", "name", "nice", "cpu_percent"]

    def __init__(
        self,
        command_timeout: float = 5.0,
        as_root: Optional[bool] = None,
        max_nice: Optional[int] = None,
    ) -> None:
        self.command_timeout = command_timeout
        if max_nice is None:
            # Darwin accepts 20; Linux and the BSDs clamp to 19.
            max_nice = 20 if sys.platform == "darwin" else 19
        self.max_nice = max_nice
        if as_root is None:
            as_root = hasattr(os, "geteuid") and os.geteuid() == 0
        self.as_root = as_root

    def snapshot(self, names: Iterable[str]) -> Dict[str, List[ProcessInstance]]:
        """Return every running instance of each name, keyed by name.

        Every requested name is present in the result; a name with no running
        instance maps to an empty list.
        """
        found: Dict[str, List[ProcessInstance]] = {name: [] for name in names}
        try:
            for proc in psutil.process_iter(attrs=self.ATTRS, ad_value=None):
                info = proc.info
                name = info.get("name")
                if name not in found:
                    continue
                pid = info["pid"]
                nice = info.get("nice")
                if nice is None:
                    nice = self.ps_nice(pid)
                if nice is None:
                    # Exited between listing and reading, or unreadable.
                    continue
                found[name].append(
                    ProcessInstance(
                        pid=pid,
                        name=name,
                        nice=int(nice),
                        cpu_percent=info.get("cpu_percent") or 0.0,
                    )
                )
        except (psutil.Error, OSError) as exc:
            raise ProcessQueryError(f"cannot enumerate processes: {exc}") from exc
        return found

    def find(self, name: str) -> List[ProcessInstance]:
        return self.snapshot([name])[name]

    def renice(self, pid: int, nice: int, privilege: PrivilegeClass = PrivilegeClass.UNPRIVILEGED) -> None:
        """Set the nice value of ``pid``. Raises :class:`CorrectionError` on failure."""
        if privilege is PrivilegeClass.PRIVILEGED and not self.as_root:
            self._sudo_renice(pid, nice)
            return
        try:
            psutil.Process(pid).nice(nice)
        except psutil.NoSuchProcess as exc:
            raise CorrectionError(f"process {pid} no longer exists") from exc
        except psutil.AccessDenied as exc:
            raise CorrectionError(f"permission denied for pid {pid}") from exc
        except OSError as exc:
            raise CorrectionError(str(exc)) from exc

    def _sudo_renice(self, pid: int, nice: int) -> None:
        cmd = ["sudo", "-n", "renice", str(nice), "-p", str(pid)]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.command_timeout)
        except subprocess.TimeoutExpired as exc:
            raise CorrectionError(f"sudo renice timed out after {self.command_timeout:g}s") from exc
        except OSError as exc:
            raise CorrectionError(f"cannot run sudo: {exc}") from exc
        if result.returncode != 0:
            message = result.stderr.strip() or f"sudo renice exited with status {result.returncode}"
            raise CorrectionError(message)

    def ps_nice(self, pid: int) -> Optional[int]:
        """Read a nice value with ``ps``, for processes psutil may not inspect."""
        try:
            result = subprocess.run(
                ["ps", "-o", "nice=", "-p", str(pid)],
                capture_output=True,
                text=True,
                timeout=self.command_timeout,
            )
        except (OSError, subprocess.TimeoutExpired):
            return None
        try:
            return int(result.stdout.strip())
        except ValueError:
            return None
