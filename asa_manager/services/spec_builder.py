import re
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from ..errors import InvalidServerSpec
from ..models import ArkMap, GameSettings, PortAssignment, ServerOverride, ServerSpec

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
MIN_PLAYERS = 1
MAX_PLAYERS = 100


@dataclass(frozen=True)
class ClusterContext:
    cluster_id: str
    cluster_name: str
    settings: GameSettings
    password: str = ""
    admin_password: str = ""


def server_name(cluster_name: str, ark_map: ArkMap, index: int, count: int) -> str:
    if count == 1:
        return f"{cluster_name}-{ark_map.short_name}"
    return f"{cluster_name}-{ark_map.short_name}-{index + 1}"


def validate_name(name: str) -> str:
    if not NAME_PATTERN.match(name or ""):
        raise InvalidServerSpec(
            "name may only contain letters, digits, '_', '.' and '-'", name or "<empty>"
        )
    return name


def build(
    context: ClusterContext,
    ark_map: Any,
    index: int,
    count: int,
    ports: PortAssignment,
    mods: Sequence[int],
    settings: Optional[GameSettings] = None,
    override: Optional[ServerOverride] = None,
) -> ServerSpec:
    try:
        ark_map = ArkMap.parse(ark_map)
    except ValueError as exc:
        raise InvalidServerSpec(str(exc)) from exc

    settings = settings or context.settings
    override = override or ServerOverride()
    name = validate_name(server_name(context.cluster_name, ark_map, index, count))

    max_players = override.max_players if override.max_players is not None else settings.max_players
    if not MIN_PLAYERS <= max_players <= MAX_PLAYERS:
        raise InvalidServerSpec(
            f"maxPlayers must be between {MIN_PLAYERS} and {MAX_PLAYERS}, got {max_players}", name
        )

    if override.session_name:
        session_name = override.session_name
    elif settings.session_name_mode == "custom" and settings.session_name:
        session_name = settings.session_name
    else:
        session_name = name

    return ServerSpec(
        name=name,
        map=ark_map,
        ports=ports,
        max_players=max_players,
        password=override.password if override.password is not None else context.password,
        admin_password=(
            override.admin_password
            if override.admin_password is not None
            else context.admin_password
        ),
        session_name=session_name,
        mods=tuple(mods),
        cluster_id=context.cluster_id,
        settings=settings,
    )
