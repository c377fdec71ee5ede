"""Renice watched processes back to the target priority, forever.

The controller polls the process table on a fixed interval. Each
``(name, pid)`` pair moves through three states:

* unseen: no entry in the watch state;
* corrected: the pair was brought to (or found at) the target nice value;
* drifted: a correction was attempted and failed, so the next tick retries.

Only transitions are logged, so a long-lived process that stays at the target
produces exactly one log line for its whole lifetime.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, TextIO, Tuple

from .config import ThrottleConfig
from .formatting import format_watch_status
from .logsink import flush_logging
from .processes import CorrectionError, PrivilegeClass, ProcessInstance, ProcessQueryError, ProcessTable

logger = logging.getLogger(__name__)


class WatchKey(NamedTuple):
    name: str
    pid: int


class WatchStatus(Enum):
    CORRECTED = "corrected"
    DRIFTED = "drifted"


class TransitionKind(Enum):
    THROTTLED = "throttled"
    REDISCOVERED = "rediscovered"
    FAILED = "failed"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    name: str
    pid: int
    old_nice: int
    target: int
    detail: str = ""


class ThrottleController:
    """Owns the watch state and runs the polling loop."""

    def __init__(
        self,
        config: ThrottleConfig,
        table: Optional[ProcessTable] = None,
        status_sink: Optional[TextIO] = None,
    ) -> None:
        self._config = config
        self._table = table or ProcessTable(command_timeout=config.command_timeout)
        self._status_sink = status_sink
        self._target = min(config.target_nice, self._table.max_nice)
        if self._target != config.target_nice:
            logger.warning(
                "Target nice %d is above the platform maximum, using %d", config.target_nice, self._target
            )
        self._state: Dict[WatchKey, WatchStatus] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()

    @property
    def config(self) -> ThrottleConfig:
        return self._config

    @property
    def target_nice(self) -> int:
        """The target actually enforced, clamped to what the kernel accepts."""
        return self._target

    @property
    def watch_list(self) -> List[Tuple[str, PrivilegeClass]]:
        watched = [(name, PrivilegeClass.UNPRIVILEGED) for name in self._config.user_processes]
        watched.extend((name, PrivilegeClass.PRIVILEGED) for name in self._config.root_processes)
        return watched

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def watch_state(self) -> Dict[WatchKey, WatchStatus]:
        """Return a copy of the watch state for readers outside the loop."""
        with self._lock:
            return dict(self._state)

    def stop(self) -> None:
        """Ask the loop to exit before its next tick. Safe to call from a signal handler."""
        self._stop_event.set()

    def run(self) -> None:
        """Poll until :meth:`stop` is called."""
        logger.info(
            "=== Process throttler started (target nice %d, every %gs) ===",
            self._target,
            self._config.interval,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    self.run_once()
                except Exception:
                    logger.exception("Unexpected error during throttle pass")
                self._stop_event.wait(timeout=self._config.interval)
        finally:
            logger.info("=== Process throttler stopped ===")
            flush_logging()

    def run_once(self) -> List[Transition]:
        """Check every watched name once and correct any drift."""
        watched = self.watch_list
        query_ok = True
        try:
            found = self._table.snapshot([name for name, _ in watched])
        except ProcessQueryError as exc:
            logger.warning("Process query failed, skipping this pass: %s", exc)
            found = {}
            query_ok = False

        if self._status_sink is not None and query_ok:
            self._write_status(found)

        def check(entry: Tuple[str, PrivilegeClass]) -> List[Transition]:
            name, privilege = entry
            return self._check_name(name, privilege, found.get(name, []))

        if self._config.workers > 1 and len(watched) > 1:
            with ThreadPoolExecutor(max_workers=self._config.workers, thread_name_prefix="throttle") as pool:
                results = list(pool.map(check, watched))
        else:
            results = [check(entry) for entry in watched]

        if query_ok and self._config.evict_stale:
            self._evict(found)

        return [transition for batch in results for transition in batch]

    def _check_name(
        self,
        name: str,
        privilege: PrivilegeClass,
        instances: Sequence[ProcessInstance],
    ) -> List[Transition]:
        target = self._target
        transitions: List[Transition] = []
        for proc in instances:
            key = WatchKey(name, proc.pid)
            if proc.nice != target:
                transitions.append(self._correct(key, proc, privilege))
                continue

            with self._lock:
                previous = self._state.get(key)
                self._state[key] = WatchStatus.CORRECTED
            if previous is not WatchStatus.CORRECTED:
                logger.info("Rediscovered %s (pid=%d) already at target priority", name, proc.pid)
                transitions.append(Transition(TransitionKind.REDISCOVERED, name, proc.pid, proc.nice, target))
        return transitions

    def _correct(self, key: WatchKey, proc: ProcessInstance, privilege: PrivilegeClass) -> Transition:
        target = self._target
        try:
            self._table.renice(proc.pid, target, privilege)
        except CorrectionError as exc:
            with self._lock:
                self._state[key] = WatchStatus.DRIFTED
            logger.warning(
                "Failed to throttle %s (pid=%d) from %d to %d: %s", key.name, proc.pid, proc.nice, target, exc
            )
            return Transition(TransitionKind.FAILED, key.name, proc.pid, proc.nice, target, str(exc))

        with self._lock:
            self._state[key] = WatchStatus.CORRECTED
        logger.info("Throttled %s (pid=%d) from %d to %d", key.name, proc.pid, proc.nice, target)
        return Transition(TransitionKind.THROTTLED, key.name, proc.pid, proc.nice, target)

    def _evict(self, found: Dict[str, List[ProcessInstance]]) -> None:
        live = {WatchKey(name, proc.pid) for name, procs in found.items() for proc in procs}
        with self._lock:
            for key in [key for key in self._state if key not in live]:
                del self._state[key]

    def _write_status(self, found: Dict[str, List[ProcessInstance]]) -> None:
        names = [name for name, _ in self.watch_list]
        try:
            self._status_sink.write(format_watch_status(names, found, datetime.now()) + "\n")
            self._status_sink.flush()
        except (OSError, ValueError) as exc:
            # ValueError: the sink was closed under us.
            logger.warning("Cannot write status report: %s", exc)
