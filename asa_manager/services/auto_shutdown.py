"""Stops servers that have had no players for a configured time."""

import logging
import re
import threading
import time
from typing import Callable, Iterable, Optional

from ..errors import ServiceError
from ..models import AutoShutdownConfig, AutoShutdownReport, BulkFailure, ServerState
from .orchestrator import LifecycleOrchestrator

logger = logging.getLogger(__name__)

LIST_PLAYERS = "ListPlayers"
_PLAYER_LINE = re.compile(r"^\s*\d+\.\s+\S")


def count_players(output: str) -> int:
    if "no players connected" in output.lower():
        return 0
    return sum(1 for line in output.splitlines() if _PLAYER_LINE.match(line))


class AutoShutdownMonitor:
    """Tracks how long each running server has been empty and stops it after the timeout.

    Warnings are broadcast once per interval as the deadline approaches. A
    player joining resets the clock.
    """

    def __init__(
        self,
        orchestrator: LifecycleOrchestrator,
        config: Optional[AutoShutdownConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.orchestrator = orchestrator
        self.config = config or AutoShutdownConfig()
        self._clock = clock
        self._empty_since: dict[str, float] = {}
        self._warned: dict[str, set[int]] = {}
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def configure(self, config: AutoShutdownConfig) -> None:
        with self._lock:
            self.config = config
            self._empty_since.clear()
            self._warned.clear()

    def empty_since(self, name: str) -> Optional[float]:
        with self._lock:
            return self._empty_since.get(name)

    def check(self, names: Iterable[str]) -> AutoShutdownReport:
        with self._lock:
            config = self.config
            report = AutoShutdownReport()
            for name in names:
                if name in config.exclude_servers:
                    continue
                try:
                    self._check_one(name, config, report)
                except ServiceError as exc:
                    logger.warning("Auto-shutdown check of %s failed: %s", name, exc.message)
                    report.failed.append(BulkFailure(name=name, error=exc.message))
            return report

    def _check_one(self, name: str, config: AutoShutdownConfig, report: AutoShutdownReport) -> None:
        if self.orchestrator.status(name).status is not ServerState.RUNNING:
            self._reset(name)
            return
        report.checked.append(name)
        players = count_players(self.orchestrator.send_command(name, LIST_PLAYERS))
        if players:
            self._reset(name)
            return

        report.empty.append(name)
        now = self._clock()
        since = self._empty_since.setdefault(name, now)
        remaining = config.empty_timeout_minutes - (now - since) / 60
        if remaining <= 0:
            logger.info("Stopping %s after %d empty minutes", name, config.empty_timeout_minutes)
            self.orchestrator.stop(name, save=True)
            self._reset(name)
            report.stopped.append(name)
            return

        sent = self._warned.setdefault(name, set())
        due = [minutes for minutes in config.warning_intervals if remaining <= minutes and minutes not in sent]
        if due:
            message = config.warning_message.replace("{time}", str(min(due)))
            self.orchestrator.send_command(name, f"ServerChat {message}")
            sent.update(due)
            report.warned.append(name)

    def _reset(self, name: str) -> None:
        self._empty_since.pop(name, None)
        self._warned.pop(name, None)

    def start(self, names: Callable[[], Iterable[str]]) -> None:
        """Run ``check`` in a background thread every ``check_interval_seconds``."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._run, args=(names,), name="auto-shutdown", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _run(self, names: Callable[[], Iterable[str]]) -> None:
        while not self._wake.wait(self.config.check_interval_seconds):
            try:
                self.check(names())
            except ServiceError as exc:
                logger.warning("Auto-shutdown pass failed: %s", exc.message)
