from typing import Any, Optional


class ServiceError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def detail(self) -> dict[str, Any]:
        return {"detail": self.message, "error": type(self).__name__}


class NotFound(ServiceError):
    def __init__(self, kind: str, name: str) -> None:
        super().__init__(404, f"{kind.capitalize()} not found: {name}")
        self.kind = kind
        self.name = name


class InvalidServerSpec(ServiceError):
    def __init__(self, message: str, name: Optional[str] = None) -> None:
        super().__init__(400, f"{name}: {message}" if name else message)
        self.name = name


class InvalidModList(ServiceError):
    def __init__(self, message: str) -> None:
        super().__init__(400, message)


class PortRangeExhausted(ServiceError):
    def __init__(self, kind: str, port: int, placed: int, requested: int) -> None:
        super().__init__(
            400,
            f"{kind} port {port} is outside 1-65535 after placing {placed} of {requested} servers",
        )
        self.kind = kind
        self.port = port
        self.placed = placed
        self.requested = requested


class PortConflict(ServiceError):
    def __init__(self, kind: str, port: int, owners: list[str]) -> None:
        super().__init__(
            409, f"{kind} port {port} is assigned more than once ({', '.join(owners)})"
        )
        self.kind = kind
        self.port = port
        self.owners = owners

    def detail(self) -> dict[str, Any]:
        payload = super().detail()
        payload.update({"kind": self.kind, "port": self.port, "owners": self.owners})
        return payload


class NameConflict(ServiceError):
    def __init__(self, name: str, owner: Optional[str] = None) -> None:
        suffix = f" (owned by {owner})" if owner else ""
        super().__init__(409, f"Name already exists: {name}{suffix}")
        self.name = name
        self.owner = owner


class ArtifactConflict(ServiceError):
    def __init__(self, server_name: str, path: str) -> None:
        super().__init__(
            409,
            f"{path} was edited outside the manager for {server_name}; "
            "regenerate with force to overwrite it",
        )
        self.server_name = server_name
        self.path = path


class AlreadyInState(ServiceError):
    def __init__(self, name: str, state: str) -> None:
        super().__init__(409, f"Server {name} is already {state}")
        self.name = name
        self.state = state


class RestartIncomplete(ServiceError):
    def __init__(self, name: str, cause: str) -> None:
        super().__init__(
            500,
            f"Server {name} was stopped but failed to start again: {cause}. "
            "Manual intervention is required.",
        )
        self.name = name
        self.cause = cause


class SupervisorUnavailable(ServiceError):
    def __init__(self, cause: str) -> None:
        super().__init__(503, f"Supervisor unavailable: {cause}")


class SupervisorCommandFailed(ServiceError):
    def __init__(self, name: str, action: str, cause: str) -> None:
        super().__init__(502, f"Failed to {action} {name}: {cause}")
        self.name = name
        self.action = action
        self.cause = cause


class OperationTimedOut(ServiceError):
    def __init__(self, name: str, action: str, timeout: float) -> None:
        super().__init__(
            504,
            f"{action} of {name} did not finish within {timeout:g}s; "
            "its state will be reconciled on the next status poll",
        )
        self.name = name
        self.action = action
        self.timeout = timeout
