import json
import logging
import os
import signal
import subprocess
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from ..config import settings
from ..errors import NotFound, ServiceError, SupervisorCommandFailed
from ..models import PortAssignment, RuntimeArtifact, ServerSpec, ServerState, ServerStatus
from .artifacts import ArtifactWriter
from .rcon import RconClient, RconError

logger = logging.getLogger(__name__)

RECORD_FILE = "native.json"
LOG_FILE = "server.log"


class NativeSupervisor:
    """ProcessSupervisor and LogSource that runs each server's start script on the host.

    Every server gets a record next to its artifacts holding its ports, admin
    password and the pid of its process group. Processes started by an
    earlier manager run are still found through that pid.
    """

    def __init__(
        self,
        writer: Optional[ArtifactWriter] = None,
        shell: Optional[str] = None,
        stop_grace: Optional[float] = None,
        rcon_host: Optional[str] = None,
        rcon_factory: Callable[..., Any] = RconClient,
        poll_interval: float = 0.5,
    ) -> None:
        self.writer = writer or ArtifactWriter()
        self.shell = shell or settings.native_shell
        self.stop_grace = stop_grace if stop_grace is not None else settings.native_stop_grace_seconds
        self.rcon_host = rcon_host or settings.native_rcon_host
        self._rcon_factory = rcon_factory
        self.poll_interval = poll_interval
        self._procs: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def create(self, spec: ServerSpec, artifact: RuntimeArtifact) -> None:
        if os.path.exists(self._record_path(spec.name)):
            logger.info("Replacing native server %s", spec.name)
            self._terminate(spec.name, self._read_record(spec.name))
        self._write_record(
            spec.name,
            {
                "name": spec.name,
                "map": spec.map.value,
                "cluster_id": spec.cluster_id,
                "ports": spec.ports.model_dump(),
                "admin_password": spec.admin_password,
                "artifact_checksum": artifact.checksum,
                "created_at": datetime.now(timezone.utc).isoformat(),
                "pid": None,
            },
        )

    def remove(self, name: str) -> None:
        record = self._read_record(name)
        self._terminate(name, record)
        try:
            os.remove(self._record_path(name))
        except FileNotFoundError:
            pass

    def start(self, name: str) -> None:
        record = self._read_record(name)
        if self._alive(name, record):
            return
        script = self.writer.script_path(name)
        if not os.path.isfile(script):
            raise SupervisorCommandFailed(name, "start", "start script is missing; regenerate the server")
        log_path = self._log_path(name)
        try:
            with open(log_path, "ab") as log_handle:
                process = subprocess.Popen(
                    [self.shell, script],
                    cwd=self.writer.server_dir(name),
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            raise SupervisorCommandFailed(name, "start", str(exc)) from exc
        with self._lock:
            self._procs[name] = process
        self._write_record(name, {**record, "pid": process.pid})
        logger.info("Started native server %s (pid %s)", name, process.pid)

    def stop(self, name: str) -> None:
        self._terminate(name, self._read_record(name))

    def status(self, name: str) -> ServerStatus:
        record = self._read_record(name)
        state = ServerState.RUNNING if self._alive(name, record) else ServerState.STOPPED
        return ServerStatus(
            name=name,
            status=state,
            ports=PortAssignment.model_validate(record["ports"]),
            created_at=record.get("created_at"),
        )

    def exec(self, name: str, command: str) -> str:
        record = self._read_record(name)
        if not self._alive(name, record):
            raise SupervisorCommandFailed(name, "run RCON command on", "server is not running")
        try:
            with self._rcon_factory(
                self.rcon_host, record["ports"]["rcon"], record.get("admin_password") or ""
            ) as client:
                return client.command(command)
        except RconError as exc:
            raise SupervisorCommandFailed(name, "run RCON command on", str(exc)) from exc

    def tail(self, name: str, lines: int) -> list[str]:
        self._read_record(name)
        path = self._log_path(name)
        if not lines or not os.path.exists(path):
            return []
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as handle:
                return handle.read().splitlines()[-lines:]
        except OSError as exc:
            raise SupervisorCommandFailed(name, "read logs of", str(exc)) from exc

    def follow(self, name: str) -> Iterator[bytes]:
        record = self._read_record(name)
        path = self._log_path(name)
        if not os.path.exists(path):
            return iter(())
        return self._follow(name, record, path)

    def _follow(self, name: str, record: dict, path: str) -> Iterator[bytes]:
        with open(path, "rb") as handle:
            handle.seek(0, os.SEEK_END)
            while True:
                line = handle.readline()
                if line:
                    yield line
                elif self._alive(name, record):
                    time.sleep(self.poll_interval)
                else:
                    return

    def _alive(self, name: str, record: dict) -> bool:
        with self._lock:
            process = self._procs.get(name)
            if process is not None:
                if process.poll() is None:
                    return True
                self._procs.pop(name, None)
                return False
        pid = record.get("pid")
        if not pid:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _terminate(self, name: str, record: dict) -> None:
        if not self._alive(name, record):
            return
        with self._lock:
            process = self._procs.get(name)
        pid = process.pid if process is not None else record["pid"]
        self._signal(pid, signal.SIGTERM)
        if not self._wait(pid, process, self.stop_grace):
            logger.warning("Native server %s ignored SIGTERM; killing it", name)
            self._signal(pid, signal.SIGKILL)
            self._wait(pid, process, self.stop_grace)
        with self._lock:
            self._procs.pop(name, None)
        self._write_record(name, {**record, "pid": None})
        logger.info("Stopped native server %s", name)

    def _signal(self, pid: int, signum: int) -> None:
        try:
            os.killpg(pid, signum)
        except ProcessLookupError:
            pass

    def _wait(self, pid: int, process: Optional[subprocess.Popen], timeout: float) -> bool:
        if process is not None:
            try:
                process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                return False
            return True
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                os.kill(pid, 0)
            except ProcessLookupError:
                return True
            time.sleep(self.poll_interval)
        return False

    def _record_path(self, name: str) -> str:
        return os.path.join(self.writer.server_dir(name), RECORD_FILE)

    def _log_path(self, name: str) -> str:
        return os.path.join(self.writer.server_dir(name), LOG_FILE)

    def _read_record(self, name: str) -> dict:
        path = self._record_path(name)
        if not os.path.exists(path):
            raise NotFound("server", name)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ServiceError(500, f"Unreadable native server record for {name}: {exc}") from exc

    def _write_record(self, name: str, record: dict) -> None:
        os.makedirs(self.writer.server_dir(name), exist_ok=True)
        path = self._record_path(name)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(record, handle, indent=2, sort_keys=True)
        os.replace(tmp_path, path)
