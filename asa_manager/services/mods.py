import logging
import threading
from typing import Hashable, Iterable, Optional, Sequence, TypeVar

from ..errors import InvalidModList
from ..models import ModConfig, ModOverride, ModsOverview

logger = logging.getLogger(__name__)

ModId = TypeVar("ModId", bound=Hashable)


def _dedupe(mods: Iterable[ModId]) -> list[ModId]:
    seen: set = set()
    result: list[ModId] = []
    for mod_id in mods:
        if mod_id in seen:
            continue
        seen.add(mod_id)
        result.append(mod_id)
    return result


def resolve(
    global_mods: Sequence[ModId],
    additional_mods: Sequence[ModId] = (),
    exclude_shared_mods: bool = False,
) -> list[ModId]:
    """Final load order for one server.

    Shared mods come first and keep precedence over per-server additions;
    duplicates keep their earliest position.
    """
    if exclude_shared_mods:
        return _dedupe(additional_mods)
    return _dedupe([*global_mods, *additional_mods])


def validate_mod_ids(mods: Iterable[object]) -> tuple[int, ...]:
    cleaned: list[int] = []
    for mod_id in mods:
        if isinstance(mod_id, bool) or not isinstance(mod_id, int) or mod_id <= 0:
            raise InvalidModList(f"Invalid mod id: {mod_id!r}")
        cleaned.append(mod_id)
    return tuple(cleaned)


class ModResolver:
    def __init__(self, config: Optional[ModConfig] = None) -> None:
        self._config = config or ModConfig()
        self._lock = threading.Lock()

    @property
    def config(self) -> ModConfig:
        return self._config

    @property
    def shared_mods(self) -> tuple[int, ...]:
        return self._config.shared_mods

    def server_override(self, name: str) -> ModOverride:
        return self._config.server_mods.get(name, ModOverride())

    def set_shared_mods(self, mods: Sequence[int]) -> ModConfig:
        cleaned = tuple(_dedupe(validate_mod_ids(mods)))
        with self._lock:
            self._config = self._config.model_copy(update={"shared_mods": cleaned})
            logger.info("Shared mods set to %s", list(cleaned))
            return self._config

    def set_server_mods(self, name: str, override: ModOverride) -> ModConfig:
        cleaned = ModOverride(
            additional_mods=tuple(_dedupe(validate_mod_ids(override.additional_mods))),
            exclude_shared_mods=override.exclude_shared_mods,
        )
        with self._lock:
            server_mods = dict(self._config.server_mods)
            server_mods[name] = cleaned
            self._config = self._config.model_copy(update={"server_mods": server_mods})
            return self._config

    def remove_server(self, name: str) -> ModConfig:
        with self._lock:
            if name not in self._config.server_mods:
                return self._config
            server_mods = dict(self._config.server_mods)
            server_mods.pop(name)
            self._config = self._config.model_copy(update={"server_mods": server_mods})
            return self._config

    def for_server(
        self,
        name: str,
        cluster_global_mods: Sequence[int] = (),
        cluster_override: Optional[ModOverride] = None,
        required: Sequence[int] = (),
    ) -> tuple[int, ...]:
        config = self._config
        shared = _dedupe([*config.shared_mods, *cluster_global_mods])
        override = cluster_override or config.server_mods.get(name) or ModOverride()
        mods = resolve(shared, override.additional_mods, override.exclude_shared_mods)
        for mod_id in required:
            if mod_id not in mods:
                mods.append(mod_id)
        return tuple(mods)

    def overview(self, total_servers: int) -> ModsOverview:
        config = self._config
        return ModsOverview(
            shared_mods=list(config.shared_mods),
            server_mods=dict(config.server_mods),
            total_servers=total_servers,
        )
