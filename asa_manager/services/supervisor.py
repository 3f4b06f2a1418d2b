from typing import Iterator, Protocol, runtime_checkable

from ..models import RuntimeArtifact, ServerSpec, ServerStatus


@runtime_checkable
class ProcessSupervisor(Protocol):
    """Whatever actually runs server processes: a container engine or the OS.

    Implementations raise ``SupervisorUnavailable`` when the engine cannot be
    reached, ``NotFound`` for unknown names and ``SupervisorCommandFailed``
    when the engine rejects a command. ``restart`` and ``install_binaries``
    are optional; callers check for them with ``getattr``.
    """

    def create(self, spec: ServerSpec, artifact: RuntimeArtifact) -> None: ...

    def remove(self, name: str) -> None: ...

    def start(self, name: str) -> None: ...

    def stop(self, name: str) -> None: ...

    def status(self, name: str) -> ServerStatus: ...

    def exec(self, name: str, command: str) -> str: ...


@runtime_checkable
class LogSource(Protocol):
    def tail(self, name: str, lines: int) -> list[str]: ...

    def follow(self, name: str) -> Iterator[bytes]: ...
