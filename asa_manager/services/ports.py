"""Deterministic game/query/RCON port placement for cluster servers."""

from typing import Iterable, Mapping, Optional, Sequence

from ..errors import InvalidServerSpec, PortConflict, PortRangeExhausted
from ..models import PortAssignment, PortConfig, PortKind, PortOverride, ServerSpec

MIN_PORT = 1
MAX_PORT = 65535

ReservedPorts = Mapping[PortKind, Mapping[int, str]]


def allocate(base_port: int, increment: int, index: int) -> int:
    return base_port + index * increment


def reserved_from(servers: Iterable[ServerSpec]) -> dict[PortKind, dict[int, str]]:
    """Index the ports already held by ``servers`` by kind, for use as ``reserved``."""
    reserved: dict[PortKind, dict[int, str]] = {kind: {} for kind in PortKind}
    for spec in servers:
        for kind in PortKind:
            reserved[kind][spec.ports.get(kind)] = spec.name
    return reserved


class PortAllocator:
    def assign(
        self,
        count: int,
        config: PortConfig,
        names: Sequence[str],
        overrides: Optional[Mapping[int, PortOverride]] = None,
        reserved: Optional[ReservedPorts] = None,
    ) -> list[PortAssignment]:
        """Place ``count`` servers, one port of each kind per server.

        Overrides win over derived ports without shifting anyone else: the
        pinned server still uses up its slot in the derived sequence. Pinned
        ports and ``reserved`` ports held by servers outside this plan are
        skipped by that sequence.
        """
        overrides = overrides or {}
        reserved = reserved or {}
        per_kind: dict[PortKind, list[int]] = {}
        for kind in PortKind:
            per_kind[kind] = self._assign_kind(
                kind, count, config, names, overrides, reserved.get(kind, {})
            )
        return [
            PortAssignment(
                game=per_kind[PortKind.GAME][index],
                query=per_kind[PortKind.QUERY][index],
                rcon=per_kind[PortKind.RCON][index],
            )
            for index in range(count)
        ]

    def _assign_kind(
        self,
        kind: PortKind,
        count: int,
        config: PortConfig,
        names: Sequence[str],
        overrides: Mapping[int, PortOverride],
        reserved: Mapping[int, str],
    ) -> list[int]:
        pinned: dict[int, int] = {}
        owners: dict[int, str] = {}
        for index in sorted(overrides):
            if index >= count:
                continue
            port = overrides[index].get(kind)
            if port is None:
                continue
            name = names[index]
            if not MIN_PORT <= port <= MAX_PORT:
                raise InvalidServerSpec(f"{kind.value} port override {port} is out of range", name)
            if port in owners:
                raise PortConflict(kind.value, port, [owners[port], name])
            if port in reserved:
                raise PortConflict(kind.value, port, [reserved[port], name])
            owners[port] = name
            pinned[index] = port

        base, increment = config.base_and_increment(kind)
        taken = set(reserved) | set(owners)
        ports: list[int] = []
        slot = 0
        for index in range(count):
            if index in pinned:
                slot += 1
                ports.append(pinned[index])
                continue
            while True:
                port = allocate(base, increment, slot)
                slot += 1
                if not MIN_PORT <= port <= MAX_PORT:
                    raise PortRangeExhausted(kind.value, port, index, count)
                if port not in taken:
                    break
            taken.add(port)
            ports.append(port)
        return ports
