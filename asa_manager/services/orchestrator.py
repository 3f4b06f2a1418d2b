import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Sequence

from ..config import settings
from ..errors import (
    AlreadyInState,
    NotFound,
    OperationTimedOut,
    RestartIncomplete,
    ServiceError,
    SupervisorUnavailable,
)
from ..models import (
    BackupInfo,
    BackupOptions,
    BulkFailure,
    BulkResult,
    RestoreOptions,
    ServerActionResponse,
    ServerState,
    ServerStatus,
)
from .backups import BackupService
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One re-entrant lock per resource name, created on first use.

    A lock is dropped only once nobody holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.RLock] = {}
        self._users: dict[str, int] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]

    def in_use(self, key: str) -> bool:
        with self._guard:
            return key in self._users

    def discard(self, key: str) -> None:
        with self._guard:
            if key not in self._users:
                self._locks.pop(key, None)


class LifecycleOrchestrator:
    """Start/stop/restart/backup/restore against a ProcessSupervisor.

    Operations on one server name are serialised; different names run in
    parallel. Every supervisor call runs on a worker pool and is waited on
    for at most ``timeout`` seconds. A timed-out call leaves the server in
    ``unknown`` until the next ``status`` poll reconciles it.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        backups: Optional[BackupService] = None,
        timeout: Optional[float] = None,
        save_command: Optional[str] = None,
        max_workers: int = 16,
    ) -> None:
        self.supervisor = supervisor
        self.backups = backups or BackupService()
        self.timeout = timeout if timeout is not None else settings.supervisor_timeout_seconds
        self.save_command = save_command or settings.save_command
        self.locks = KeyedLocks()
        self._states: dict[str, ServerState] = {}
        self._states_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="supervisor")

    def state(self, name: str) -> ServerState:
        with self._states_lock:
            return self._states.get(name, ServerState.UNKNOWN)

    def status(self, name: str, timeout: Optional[float] = None) -> ServerStatus:
        try:
            result = self._call(name, "status", self.supervisor.status, name, timeout=timeout)
        except SupervisorUnavailable:
            self._set_state(name, ServerState.UNKNOWN)
            raise
        self._set_state(name, result.status)
        return result

    def start(self, name: str, timeout: Optional[float] = None) -> ServerActionResponse:
        with self.locks.hold(name):
            current = self._query(name, timeout)
            try:
                self._require_not(name, current, ServerState.RUNNING)
            except AlreadyInState as exc:
                logger.info("%s", exc.message)
                return ServerActionResponse(name=name, status="running", message="already running")

            self._set_state(name, ServerState.STARTING)
            try:
                self._call(name, "start", self.supervisor.start, name, timeout=timeout)
            except OperationTimedOut:
                raise
            except ServiceError:
                self._set_state(name, current)
                raise
            self._set_state(name, ServerState.RUNNING)
            logger.info("Started %s", name)
            return ServerActionResponse(name=name, status="started")

    def stop(self, name: str, save: bool = True, timeout: Optional[float] = None) -> ServerActionResponse:
        with self.locks.hold(name):
            current = self._query(name, timeout)
            try:
                self._require_not(name, current, ServerState.STOPPED)
            except AlreadyInState as exc:
                logger.info("%s", exc.message)
                return ServerActionResponse(name=name, status="stopped", message="already stopped")

            self._set_state(name, ServerState.STOPPING)
            saved = self.save_world(name, timeout) if save else False
            try:
                self._call(name, "stop", self.supervisor.stop, name, timeout=timeout)
            except OperationTimedOut:
                raise
            except ServiceError:
                self._set_state(name, current)
                raise
            self._set_state(name, ServerState.STOPPED)
            logger.info("Stopped %s (world saved: %s)", name, saved)
            message = "" if saved or not save else "world save failed; stopped without saving"
            return ServerActionResponse(name=name, status="stopped", message=message)

    def restart(self, name: str, timeout: Optional[float] = None) -> ServerActionResponse:
        with self.locks.hold(name):
            current = self._query(name, timeout)
            if current is not ServerState.RUNNING:
                return self.start(name, timeout)

            self.save_world(name, timeout)
            self._set_state(name, ServerState.RESTARTING)
            native_restart = getattr(self.supervisor, "restart", None)
            if callable(native_restart):
                try:
                    self._call(name, "restart", native_restart, name, timeout=timeout)
                except OperationTimedOut:
                    raise
                except ServiceError:
                    self._set_state(name, ServerState.UNKNOWN)
                    raise
                self._set_state(name, ServerState.RUNNING)
                logger.info("Restarted %s", name)
                return ServerActionResponse(name=name, status="restarted")

            try:
                self._call(name, "stop", self.supervisor.stop, name, timeout=timeout)
            except OperationTimedOut:
                raise
            except ServiceError:
                self._set_state(name, current)
                raise
            self._set_state(name, ServerState.STOPPED)
            try:
                self._call(name, "start", self.supervisor.start, name, timeout=timeout)
            except OperationTimedOut:
                raise
            except ServiceError as exc:
                self._set_state(name, ServerState.STOPPED)
                raise RestartIncomplete(name, exc.message) from exc
            self._set_state(name, ServerState.RUNNING)
            logger.info("Restarted %s (stop then start)", name)
            return ServerActionResponse(name=name, status="restarted")

    def save_world(self, name: str, timeout: Optional[float] = None) -> bool:
        try:
            self._call(
                name,
                "save",
                self.supervisor.exec,
                name,
                self.save_command,
                timeout=timeout,
                mark_unknown=False,
            )
        except ServiceError as exc:
            logger.warning("World save failed for %s: %s", name, exc.message)
            return False
        return True

    def send_command(self, name: str, command: str, timeout: Optional[float] = None) -> str:
        with self.locks.hold(name):
            if self._query(name, timeout) is not ServerState.RUNNING:
                raise ServiceError(409, f"Server {name} must be running to accept commands")
            return self._call(
                name, "command", self.supervisor.exec, name, command, timeout=timeout, mark_unknown=False
            )

    def backup(
        self, name: str, options: Optional[BackupOptions] = None, timeout: Optional[float] = None
    ) -> BackupInfo:
        with self.locks.hold(name):
            if self._query_or_stopped(name, timeout) is ServerState.RUNNING:
                # Avoid archiving a half-written save from the live server.
                self.save_world(name, timeout)
            return self.backups.backup(name, options)

    def restore(
        self,
        name: str,
        source: str,
        options: Optional[RestoreOptions] = None,
        timeout: Optional[float] = None,
    ) -> list[str]:
        options = options or RestoreOptions()
        with self.locks.hold(name):
            was_running = self._query_or_stopped(name, timeout) is ServerState.RUNNING
            if was_running:
                self.stop(name, save=True, timeout=timeout)
            restored = self.backups.restore(name, source, options)
            start_after = options.start_after if options.start_after is not None else was_running
            if start_after:
                self.start(name, timeout)
            return restored

    def run_bulk(self, names: Sequence[str], action: Callable[[str], Any]) -> BulkResult:
        """Apply ``action`` to each server; one failure never stops the rest."""
        result = BulkResult()
        for name in names:
            try:
                action(name)
            except ServiceError as exc:
                logger.warning("Bulk operation failed for %s: %s", name, exc.message)
                result.failed.append(BulkFailure(name=name, error=exc.message))
            except Exception as exc:
                logger.exception("Bulk operation crashed for %s", name)
                result.failed.append(BulkFailure(name=name, error=str(exc) or type(exc).__name__))
            else:
                result.successful.append(name)
            result.total_processed += 1
        return result

    def update_all(self, names: Sequence[str], update: Callable[[str], Any]) -> BulkResult:
        return self.run_bulk(names, update)

    def start_many(self, names: Sequence[str]) -> BulkResult:
        return self.run_bulk(names, self.start)

    def stop_many(self, names: Sequence[str], save: bool = True) -> BulkResult:
        return self.run_bulk(names, lambda name: self.stop(name, save=save))

    def restart_many(self, names: Sequence[str]) -> BulkResult:
        return self.run_bulk(names, self.restart)

    def forget(self, name: str) -> None:
        with self._states_lock:
            self._states.pop(name, None)
        self.locks.discard(name)

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)

    def _require_not(self, name: str, current: ServerState, state: ServerState) -> None:
        if current is state:
            raise AlreadyInState(name, state.value)

    def _query(self, name: str, timeout: Optional[float]) -> ServerState:
        return self.status(name, timeout).status

    def _query_or_stopped(self, name: str, timeout: Optional[float]) -> ServerState:
        try:
            return self._query(name, timeout)
        except NotFound:
            return ServerState.STOPPED

    def _set_state(self, name: str, state: ServerState) -> None:
        with self._states_lock:
            self._states[name] = state

    def _call(
        self,
        name: str,
        action: str,
        fn: Callable[..., Any],
        *args: Any,
        timeout: Optional[float] = None,
        mark_unknown: bool = True,
    ) -> Any:
        limit = timeout if timeout is not None else self.timeout
        future = self._pool.submit(fn, *args)
        try:
            return future.result(timeout=limit)
        except FutureTimeout as exc:
            if mark_unknown:
                self._set_state(name, ServerState.UNKNOWN)
            logger.warning("%s of %s timed out after %ss", action, name, limit)
            raise OperationTimedOut(name, action, limit) from exc
