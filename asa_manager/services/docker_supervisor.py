import logging
import os
import shlex
from typing import Callable, Iterator, Optional

import docker
from docker.errors import DockerException

from ..config import settings
from ..docker_client import get_docker_client
from ..errors import NotFound, SupervisorCommandFailed, SupervisorUnavailable
from ..models import PortAssignment, RuntimeArtifact, ServerSpec, ServerState, ServerStatus

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "running": ServerState.RUNNING,
    "restarting": ServerState.RESTARTING,
    "created": ServerState.STOPPED,
    "exited": ServerState.STOPPED,
    "dead": ServerState.STOPPED,
}


class DockerSupervisor:
    """ProcessSupervisor and LogSource backed by the Docker engine."""

    def __init__(
        self,
        client_factory: Callable[[], docker.DockerClient] = get_docker_client,
        image: Optional[str] = None,
        stop_timeout: int = 60,
    ) -> None:
        self._client_factory = client_factory
        self.image = image or settings.asa_image
        self.stop_timeout = stop_timeout

    def create(self, spec: ServerSpec, artifact: RuntimeArtifact) -> None:
        client = self._client()
        existing = self._find_container(spec.name)
        if existing is not None:
            logger.info("Recreating container for %s", spec.name)
            try:
                existing.remove(force=True)
            except DockerException as exc:
                raise SupervisorCommandFailed(spec.name, "replace", str(exc)) from exc

        server_files = os.path.join(settings.host_data_root, spec.name, "server-files")
        cluster_files = os.path.join(settings.host_data_root, "_clusters", spec.cluster_id)
        try:
            client.containers.create(
                self.image,
                name=f"asa_{spec.name}",
                detach=True,
                ports={
                    f"{spec.ports.game}/udp": spec.ports.game,
                    f"{spec.ports.query}/udp": spec.ports.query,
                    f"{spec.ports.rcon}/tcp": spec.ports.rcon,
                },
                volumes={
                    server_files: {"bind": settings.container_server_root, "mode": "rw"},
                    cluster_files: {"bind": settings.cluster_dir, "mode": "rw"},
                },
                environment=dict(artifact.environment),
                labels=self._labels(spec, artifact),
            )
        except DockerException as exc:
            raise SupervisorCommandFailed(spec.name, "create", str(exc)) from exc

    def remove(self, name: str) -> None:
        container = self._get_container(name)
        try:
            container.remove(force=True)
        except DockerException as exc:
            raise SupervisorCommandFailed(name, "remove", str(exc)) from exc

    def start(self, name: str) -> None:
        container = self._get_container(name)
        try:
            container.start()
        except DockerException as exc:
            raise SupervisorCommandFailed(name, "start", str(exc)) from exc

    def stop(self, name: str) -> None:
        container = self._get_container(name)
        try:
            container.stop(timeout=self.stop_timeout)
        except DockerException as exc:
            raise SupervisorCommandFailed(name, "stop", str(exc)) from exc

    def restart(self, name: str) -> None:
        container = self._get_container(name)
        try:
            container.restart(timeout=self.stop_timeout)
        except DockerException as exc:
            raise SupervisorCommandFailed(name, "restart", str(exc)) from exc

    def status(self, name: str) -> ServerStatus:
        container = self._get_container(name)
        try:
            container.reload()
        except DockerException as exc:
            raise SupervisorUnavailable(str(exc)) from exc
        return self._container_to_status(container)

    def list_statuses(self) -> list[ServerStatus]:
        client = self._client()
        try:
            containers = client.containers.list(
                all=True,
                filters={"label": f"{settings.managed_label}={settings.managed_label_value}"},
            )
        except DockerException as exc:
            raise SupervisorUnavailable(str(exc)) from exc
        return [self._container_to_status(container) for container in containers]

    def exec(self, name: str, command: str) -> str:
        container = self._get_container(name)
        argv = [*shlex.split(settings.rcon_exec_command), command]
        try:
            result = container.exec_run(argv, stdout=True, stderr=True)
        except DockerException as exc:
            raise SupervisorCommandFailed(name, "run RCON command on", str(exc)) from exc

        output = result.output.decode("utf-8", errors="replace") if result.output else ""
        if result.exit_code != 0:
            raise SupervisorCommandFailed(name, "run RCON command on", output.strip())
        return output

    def install_binaries(self) -> str:
        client = self._client()
        repository, _, tag = self.image.rpartition(":")
        if not repository or "/" in tag:
            repository, tag = self.image, "latest"
        try:
            image = client.images.pull(repository, tag=tag)
        except DockerException as exc:
            raise SupervisorCommandFailed(self.image, "pull", str(exc)) from exc
        logger.info("Pulled %s (%s)", self.image, image.id)
        return image.id

    def tail(self, name: str, lines: int) -> list[str]:
        container = self._get_container(name)
        try:
            raw = container.logs(tail=lines)
        except DockerException as exc:
            raise SupervisorCommandFailed(name, "read logs of", str(exc)) from exc
        return raw.decode("utf-8", errors="replace").splitlines()

    def follow(self, name: str) -> Iterator[bytes]:
        container = self._get_container(name)
        try:
            return container.logs(stream=True, follow=True, tail=0)
        except DockerException as exc:
            raise SupervisorCommandFailed(name, "follow logs of", str(exc)) from exc

    def _client(self) -> docker.DockerClient:
        try:
            return self._client_factory()
        except DockerException as exc:
            raise SupervisorUnavailable(str(exc)) from exc

    def _find_container(self, name: str):
        client = self._client()
        try:
            containers = client.containers.list(
                all=True,
                filters={
                    "label": [
                        f"{settings.managed_label}={settings.managed_label_value}",
                        f"asa.server_name={name}",
                    ]
                },
            )
        except DockerException as exc:
            raise SupervisorUnavailable(str(exc)) from exc
        return containers[0] if containers else None

    def _get_container(self, name: str):
        container = self._find_container(name)
        if container is None:
            raise NotFound("server", name)
        return container

    def _labels(self, spec: ServerSpec, artifact: RuntimeArtifact) -> dict[str, str]:
        return {
            settings.managed_label: settings.managed_label_value,
            "asa.server_name": spec.name,
            "asa.cluster_id": spec.cluster_id,
            "asa.map": spec.map.value,
            "asa.port.game": str(spec.ports.game),
            "asa.port.query": str(spec.ports.query),
            "asa.port.rcon": str(spec.ports.rcon),
            "asa.artifact_checksum": artifact.checksum,
        }

    def _container_to_status(self, container) -> ServerStatus:
        labels = container.labels or {}
        ports = None
        values = [labels.get(f"asa.port.{kind}", "") for kind in ("game", "query", "rcon")]
        if all(value.isdigit() for value in values):
            ports = PortAssignment(game=int(values[0]), query=int(values[1]), rcon=int(values[2]))
        return ServerStatus(
            name=labels.get("asa.server_name", container.name),
            status=STATUS_MAP.get((container.status or "").lower(), ServerState.UNKNOWN),
            ports=ports,
            created_at=container.attrs.get("Created"),
        )
