from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


Scalar = Union[bool, int, float, str]
IniSections = Dict[str, Dict[str, Scalar]]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ArkMap(str, Enum):
    THE_ISLAND = "TheIsland_WP"
    THE_CENTER = "TheCenter_WP"
    SCORCHED_EARTH = "ScorchedEarth_WP"
    RAGNAROK = "Ragnarok_WP"
    ABERRATION = "Aberration_WP"
    EXTINCTION = "Extinction_WP"
    VALGUERO = "Valguero_WP"
    CLUB_ARK = "BobsMissions_WP"
    ASTRAEOS = "Astraeos_WP"
    LOST_COLONY = "LostColony_WP"

    @property
    def short_name(self) -> str:
        return self.value[: -len("_WP")]

    @property
    def display_name(self) -> str:
        return MAP_DISPLAY_NAMES[self]

    @classmethod
    def parse(cls, value: Any) -> "ArkMap":
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip()
        for item in cls:
            if raw.lower() in {item.value.lower(), item.short_name.lower()}:
                return item
        raise ValueError(f"Unsupported map: {raw or '<empty>'}")


MAP_DISPLAY_NAMES = {
    ArkMap.THE_ISLAND: "The Island",
    ArkMap.THE_CENTER: "The Center",
    ArkMap.SCORCHED_EARTH: "Scorched Earth",
    ArkMap.RAGNAROK: "Ragnarok",
    ArkMap.ABERRATION: "Aberration",
    ArkMap.EXTINCTION: "Extinction",
    ArkMap.VALGUERO: "Valguero",
    ArkMap.CLUB_ARK: "Club ARK",
    ArkMap.ASTRAEOS: "Astraeos",
    ArkMap.LOST_COLONY: "Lost Colony",
}

# Maps that cannot load without their companion mod.
MAP_REQUIRED_MODS: Dict[ArkMap, tuple[int, ...]] = {
    ArkMap.CLUB_ARK: (1005639,),
}


class PortKind(str, Enum):
    GAME = "game"
    QUERY = "query"
    RCON = "rcon"


class PortAssignment(FrozenModel):
    game: int = Field(..., ge=1, le=65535)
    query: int = Field(..., ge=1, le=65535)
    rcon: int = Field(..., ge=1, le=65535)

    def get(self, kind: PortKind) -> int:
        return getattr(self, kind.value)


class PortOverride(FrozenModel):
    game: Optional[int] = None
    query: Optional[int] = None
    rcon: Optional[int] = None

    def get(self, kind: PortKind) -> Optional[int]:
        return getattr(self, kind.value)


class PortConfig(FrozenModel):
    base_port: int = 7777
    port_increment: int = Field(1, ge=1)
    query_port_base: int = 27115
    query_port_increment: int = Field(1, ge=1)
    rcon_port_base: int = 32330
    rcon_port_increment: int = Field(1, ge=1)

    @classmethod
    def from_mode(cls, base_port: int, mode: str = "sequential") -> "PortConfig":
        if mode == "even":
            return cls(
                base_port=base_port,
                port_increment=2,
                query_port_base=base_port + 1,
                query_port_increment=2,
                rcon_port_base=base_port + 2,
                rcon_port_increment=2,
            )
        if mode != "sequential":
            raise ValueError(f"Unknown port allocation mode: {mode}")
        return cls(
            base_port=base_port,
            port_increment=1,
            query_port_base=base_port + 19338,
            query_port_increment=1,
            rcon_port_base=base_port + 24553,
            rcon_port_increment=1,
        )

    def base_and_increment(self, kind: PortKind) -> tuple[int, int]:
        if kind is PortKind.GAME:
            return self.base_port, self.port_increment
        if kind is PortKind.QUERY:
            return self.query_port_base, self.query_port_increment
        return self.rcon_port_base, self.rcon_port_increment


class ModOverride(FrozenModel):
    additional_mods: tuple[int, ...] = ()
    exclude_shared_mods: bool = False


class ModConfig(FrozenModel):
    shared_mods: tuple[int, ...] = ()
    server_mods: Dict[str, ModOverride] = Field(default_factory=dict)


class GameSettings(FrozenModel):
    max_players: int = 70
    difficulty_offset: float = 1.0
    harvest_multiplier: float = 1.0
    xp_multiplier: float = 1.0
    taming_multiplier: float = 1.0
    session_name_mode: str = Field("auto", pattern="^(auto|custom)$")
    session_name: Optional[str] = None
    cluster_password: str = ""
    disable_battleye: bool = True
    custom_dynamic_config_url: Optional[str] = None
    extra_args: tuple[str, ...] = ()


class ServerOverride(FrozenModel):
    ports: Optional[PortOverride] = None
    max_players: Optional[int] = None
    password: Optional[str] = None
    admin_password: Optional[str] = None
    session_name: Optional[str] = None


class MapSelection(FrozenModel):
    map: ArkMap
    count: int = Field(1, ge=0, le=50)
    enabled: bool = True

    @field_validator("map", mode="before")
    @classmethod
    def _parse_map(cls, value: Any) -> ArkMap:
        return ArkMap.parse(value)


_FLAT_PORT_FIELDS = (
    "base_port",
    "port_increment",
    "query_port_base",
    "query_port_increment",
    "rcon_port_base",
    "rcon_port_increment",
)


class ClusterRequest(FrozenModel):
    name: str = Field(..., min_length=1, max_length=48)
    description: str = ""
    maps: tuple[MapSelection, ...] = ()
    ports: PortConfig = Field(default_factory=PortConfig)
    settings: GameSettings = Field(default_factory=GameSettings)
    password: str = ""
    admin_password: str = ""
    global_mods: tuple[int, ...] = ()
    server_mods: Dict[str, ModOverride] = Field(default_factory=dict)
    server_overrides: Dict[str, ServerOverride] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fold_port_shorthand(cls, data: Any) -> Any:
        # Accepts the wizard's flat port record with an optional portAllocationMode preset.
        if not isinstance(data, dict) or "ports" in data:
            return data
        data = dict(data)
        explicit = {}
        for field in _FLAT_PORT_FIELDS:
            value = data.pop(to_camel(field), data.pop(field, None))
            if value is not None:
                explicit[field] = int(value)
        mode = data.pop("portAllocationMode", data.pop("port_allocation_mode", "sequential"))
        if "base_port" not in explicit:
            if explicit:
                data["ports"] = PortConfig(**explicit)
            return data
        preset = PortConfig.from_mode(explicit["base_port"], mode)
        data["ports"] = PortConfig.model_validate({**preset.model_dump(), **explicit})
        return data

    @property
    def server_count(self) -> int:
        return sum(selection.count for selection in self.maps if selection.enabled)


class ServerSpec(FrozenModel):
    name: str
    map: ArkMap
    ports: PortAssignment
    max_players: int
    password: str = ""
    admin_password: str = ""
    session_name: str
    mods: tuple[int, ...] = ()
    cluster_id: str
    settings: GameSettings = Field(default_factory=GameSettings)


class ClusterSpec(FrozenModel):
    id: str
    name: str
    description: str = ""
    port_config: PortConfig
    global_settings: GameSettings
    global_mods: tuple[int, ...] = ()
    servers: tuple[ServerSpec, ...] = ()
    request: ClusterRequest
    created_at: Optional[datetime] = None

    def server(self, name: str) -> Optional[ServerSpec]:
        for spec in self.servers:
            if spec.name == name:
                return spec
        return None

    def same_servers(self, other: "ClusterSpec") -> bool:
        return self.servers == other.servers


class GlobalConfig(FrozenModel):
    game_user_settings: IniSections = Field(default_factory=dict)
    game_ini: IniSections = Field(default_factory=dict)
    excluded_servers: tuple[str, ...] = ()


class GlobalConfigUpdate(CamelModel):
    """Partial update; omitted fields keep their stored value."""

    game_user_settings: Optional[IniSections] = None
    game_ini: Optional[IniSections] = None
    excluded_servers: Optional[list[str]] = None


class RuntimeArtifact(FrozenModel):
    server_name: str
    launch_args: tuple[str, ...]
    launch_command: str
    script_content: str
    config_fragments: Dict[str, str]
    environment: Dict[str, str]
    checksum: str


class ServerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    RESTARTING = "restarting"
    UNKNOWN = "unknown"


class ServerStatus(CamelModel):
    name: str
    status: ServerState
    ports: Optional[PortAssignment] = None
    created_at: Optional[str] = None


class JobKind(str, Enum):
    CREATE_CLUSTER = "create-cluster"
    INSTALL_BINARIES = "install-binaries"
    UPDATE_ALL = "update-all"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


class LifecycleJob(CamelModel):
    id: str
    kind: JobKind
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    message: str = ""
    result: Optional[Any] = None
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class BulkFailure(CamelModel):
    name: str
    error: str


class BulkResult(CamelModel):
    successful: list[str] = Field(default_factory=list)
    failed: list[BulkFailure] = Field(default_factory=list)
    total_processed: int = 0


class BackupOptions(CamelModel):
    destination: Optional[str] = None
    include_saves: bool = True
    include_configs: bool = True
    include_scripts: bool = True


class RestoreOptions(CamelModel):
    overwrite: bool = True
    start_after: Optional[bool] = None


class BackupInfo(CamelModel):
    server_name: str
    name: str
    path: str
    size_bytes: int
    created_at: str


# API shapes


class ServerActionResponse(CamelModel):
    name: str
    status: str
    message: str = ""


class CommandRequest(CamelModel):
    command: str = Field(..., min_length=1)


class CommandResponse(CamelModel):
    name: str
    output: str


class StartScriptResponse(CamelModel):
    server_name: str
    cluster_name: str
    script_path: str
    content: str
    last_modified: Optional[str] = None


class ClusterSummary(CamelModel):
    id: str
    name: str
    description: str
    server_count: int
    created_at: Optional[datetime] = None


class ClusterCreateResponse(CamelModel):
    message: str
    cluster: Optional[ClusterSpec] = None
    job_id: Optional[str] = None


class RegenerateResponse(CamelModel):
    cluster: ClusterSpec
    written: list[str]


class SharedModsUpdate(CamelModel):
    shared_mods: list[int]


class ExclusionsUpdate(CamelModel):
    excluded_servers: list[str]


class ModsOverview(CamelModel):
    shared_mods: list[int]
    server_mods: Dict[str, ModOverride]
    total_servers: int


class RestoreRequest(CamelModel):
    source: str = Field(..., min_length=1)
    options: RestoreOptions = Field(default_factory=RestoreOptions)


class UpdateAllRequest(CamelModel):
    names: Optional[list[str]] = None


class JobAccepted(CamelModel):
    job_id: str
    kind: JobKind


class CurseForgeMod(CamelModel):
    id: int
    name: str
    summary: str = ""
    download_count: Optional[int] = None
    website_url: Optional[str] = None


class AutoShutdownConfig(FrozenModel):
    enabled: bool = False
    empty_timeout_minutes: int = Field(30, ge=1)
    warning_intervals: tuple[int, ...] = (15, 10, 5, 2)
    warning_message: str = "Server will shut down in {time} minutes due to inactivity"
    exclude_servers: tuple[str, ...] = ()
    check_interval_seconds: int = Field(60, ge=1)


class AutoShutdownReport(CamelModel):
    checked: list[str] = Field(default_factory=list)
    empty: list[str] = Field(default_factory=list)
    warned: list[str] = Field(default_factory=list)
    stopped: list[str] = Field(default_factory=list)
    failed: list[BulkFailure] = Field(default_factory=list)
