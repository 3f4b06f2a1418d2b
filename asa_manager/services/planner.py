import logging
import re
import threading
from typing import Mapping, Optional

from ..errors import NameConflict
from ..models import MAP_REQUIRED_MODS, ArkMap, ClusterRequest, ClusterSpec, ModConfig, PortOverride
from . import spec_builder
from .mods import ModResolver, validate_mod_ids
from .ports import PortAllocator, ReservedPorts

logger = logging.getLogger(__name__)


def cluster_id_for(name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9_-]+", "-", name).strip("-_").lower()
    return cleaned or "cluster"


class ClusterPlanner:
    """Expands a ClusterRequest into an ordered, fully-addressed ClusterSpec.

    Planning is a pure function of the request, the reserved ports and names
    of other clusters, and the host-wide mod table, so re-planning an
    unchanged cluster yields the same names and ports every time.
    """

    def __init__(self, allocator: Optional[PortAllocator] = None) -> None:
        self.allocator = allocator or PortAllocator()
        self._lock = threading.Lock()

    def plan(
        self,
        request: ClusterRequest,
        reserved: Optional[ReservedPorts] = None,
        mod_config: Optional[ModConfig] = None,
        taken_names: Optional[Mapping[str, str]] = None,
    ) -> ClusterSpec:
        with self._lock:
            return self._plan(request, reserved, mod_config, taken_names or {})

    def verify_ports(
        self,
        cluster: ClusterSpec,
        reserved: Optional[ReservedPorts] = None,
        mod_config: Optional[ModConfig] = None,
    ) -> bool:
        replanned = self.plan(cluster.request, reserved, mod_config)
        return [spec.ports for spec in replanned.servers] == [spec.ports for spec in cluster.servers]

    def _plan(
        self,
        request: ClusterRequest,
        reserved: Optional[ReservedPorts],
        mod_config: Optional[ModConfig],
        taken_names: Mapping[str, str],
    ) -> ClusterSpec:
        spec_builder.validate_name(request.name)
        cluster_id = cluster_id_for(request.name)
        validate_mod_ids(request.global_mods)

        slots: list[tuple[ArkMap, int, int, str]] = []
        seen: set[str] = set()
        for selection in request.maps:
            if not selection.enabled or selection.count <= 0:
                continue
            for index in range(selection.count):
                name = spec_builder.server_name(request.name, selection.map, index, selection.count)
                if name in seen:
                    raise NameConflict(name, request.name)
                if name in taken_names:
                    raise NameConflict(name, taken_names[name])
                seen.add(name)
                slots.append((selection.map, index, selection.count, name))

        names = [slot[3] for slot in slots]
        unknown = sorted(set(request.server_overrides) - seen)
        if unknown:
            logger.debug("Ignoring overrides for servers not in plan %s: %s", request.name, unknown)

        port_overrides: dict[int, PortOverride] = {}
        for position, name in enumerate(names):
            override = request.server_overrides.get(name)
            if override is not None and override.ports is not None:
                port_overrides[position] = override.ports

        assignments = self.allocator.assign(
            len(slots), request.ports, names, overrides=port_overrides, reserved=reserved
        )

        resolver = ModResolver(mod_config)
        context = spec_builder.ClusterContext(
            cluster_id=cluster_id,
            cluster_name=request.name,
            settings=request.settings,
            password=request.password,
            admin_password=request.admin_password,
        )
        servers = []
        for position, (ark_map, index, count, name) in enumerate(slots):
            mods = resolver.for_server(
                name,
                cluster_global_mods=request.global_mods,
                cluster_override=request.server_mods.get(name),
                required=MAP_REQUIRED_MODS.get(ark_map, ()),
            )
            servers.append(
                spec_builder.build(
                    context,
                    ark_map,
                    index,
                    count,
                    assignments[position],
                    validate_mod_ids(mods),
                    override=request.server_overrides.get(name),
                )
            )

        return ClusterSpec(
            id=cluster_id,
            name=request.name,
            description=request.description,
            port_config=request.ports,
            global_settings=request.settings,
            global_mods=request.global_mods,
            servers=tuple(servers),
            request=request,
        )
