import pytest
from pydantic import ValidationError

from asa_manager.errors import InvalidServerSpec, PortConflict, PortRangeExhausted
from asa_manager.models import ClusterRequest, PortConfig, PortKind, PortOverride
from asa_manager.services.ports import PortAllocator, allocate


def names(count):
    return [f"srv-{index}" for index in range(count)]


class TestAllocate:
    def test_base_plus_index_times_increment(self):
        assert allocate(7777, 1, 0) == 7777
        assert allocate(7777, 2, 3) == 7783


class TestPortConfig:
    def test_sequential_mode_offsets(self):
        config = PortConfig.from_mode(7777, "sequential")
        assert config.base_and_increment(PortKind.QUERY) == (27115, 1)
        assert config.base_and_increment(PortKind.RCON) == (32330, 1)

    def test_even_mode_interleaves_kinds(self):
        config = PortConfig.from_mode(7000, "even")
        assert config.base_and_increment(PortKind.GAME) == (7000, 2)
        assert config.base_and_increment(PortKind.QUERY) == (7001, 2)
        assert config.base_and_increment(PortKind.RCON) == (7002, 2)

    def test_unknown_mode_is_rejected(self):
        with pytest.raises(ValueError):
            PortConfig.from_mode(7000, "random")


class TestFlatPortRecord:
    def test_all_six_keys_are_kept(self):
        request = ClusterRequest.model_validate(
            {
                "name": "alpha",
                "basePort": 7777,
                "portIncrement": 2,
                "queryPortBase": 27015,
                "queryPortIncrement": 3,
                "rconPortBase": 27020,
                "rconPortIncrement": 4,
            }
        )
        assert request.ports == PortConfig(
            base_port=7777,
            port_increment=2,
            query_port_base=27015,
            query_port_increment=3,
            rcon_port_base=27020,
            rcon_port_increment=4,
        )

    def test_missing_keys_come_from_the_preset(self):
        request = ClusterRequest.model_validate(
            {"name": "alpha", "basePort": 7000, "rcon_port_base": 9000}
        )
        assert request.ports.base_and_increment(PortKind.QUERY) == (26338, 1)
        assert request.ports.base_and_increment(PortKind.RCON) == (9000, 1)

    def test_even_preset_with_explicit_query_base(self):
        request = ClusterRequest.model_validate(
            {"name": "alpha", "basePort": 7000, "portAllocationMode": "even", "queryPortBase": 8000}
        )
        assert request.ports.base_and_increment(PortKind.QUERY) == (8000, 2)
        assert request.ports.base_and_increment(PortKind.RCON) == (7002, 2)

    def test_query_and_rcon_without_base_port(self):
        request = ClusterRequest.model_validate({"name": "alpha", "queryPortBase": 27015})
        assert request.ports.base_port == 7777
        assert request.ports.query_port_base == 27015

    def test_zero_increment_is_rejected(self):
        with pytest.raises(ValidationError):
            ClusterRequest.model_validate({"name": "alpha", "basePort": 7777, "rconPortIncrement": 0})


class TestPortAllocator:
    def test_sequential_assignment(self):
        result = PortAllocator().assign(3, PortConfig(), names(3))
        assert [item.game for item in result] == [7777, 7778, 7779]
        assert [item.query for item in result] == [27115, 27116, 27117]
        assert [item.rcon for item in result] == [32330, 32331, 32332]

    def test_zero_servers_is_empty(self):
        assert PortAllocator().assign(0, PortConfig(), []) == []

    def test_override_wins_and_is_skipped_by_sequence(self):
        """A pinned port is never handed out again by the derived sequence."""
        overrides = {0: PortOverride(game=7778)}
        result = PortAllocator().assign(3, PortConfig(), names(3), overrides=overrides)
        assert [item.game for item in result] == [7778, 7779, 7780]

    def test_pinned_server_keeps_its_slot(self):
        """Pinning one server leaves every other server on its derived port."""
        overrides = {1: PortOverride(game=9100, rcon=40000)}
        result = PortAllocator().assign(3, PortConfig(), names(3), overrides=overrides)
        assert [item.game for item in result] == [7777, 9100, 7779]
        assert [item.query for item in result] == [27115, 27116, 27117]
        assert [item.rcon for item in result] == [32330, 40000, 32332]

    def test_reserved_ports_are_skipped(self):
        reserved = {PortKind.GAME: {7777: "other-server"}}
        result = PortAllocator().assign(2, PortConfig(), names(2), reserved=reserved)
        assert [item.game for item in result] == [7778, 7779]
        assert [item.query for item in result] == [27115, 27116]

    def test_override_colliding_with_reserved_port(self):
        reserved = {PortKind.RCON: {40000: "other-server"}}
        overrides = {1: PortOverride(rcon=40000)}
        with pytest.raises(PortConflict) as exc_info:
            PortAllocator().assign(2, PortConfig(), names(2), overrides=overrides, reserved=reserved)
        assert exc_info.value.kind == "rcon"
        assert exc_info.value.port == 40000
        assert exc_info.value.owners == ["other-server", "srv-1"]

    def test_duplicate_overrides_conflict(self):
        overrides = {0: PortOverride(game=9000), 1: PortOverride(game=9000)}
        with pytest.raises(PortConflict):
            PortAllocator().assign(2, PortConfig(), names(2), overrides=overrides)

    def test_override_out_of_range(self):
        with pytest.raises(InvalidServerSpec):
            PortAllocator().assign(1, PortConfig(), names(1), overrides={0: PortOverride(query=70000)})

    def test_range_exhausted_reports_progress(self):
        config = PortConfig(base_port=65534, port_increment=1)
        with pytest.raises(PortRangeExhausted) as exc_info:
            PortAllocator().assign(3, config, names(3))
        assert exc_info.value.port == 65536
        assert exc_info.value.placed == 2
        assert exc_info.value.requested == 3

    def test_ports_unique_per_kind(self):
        result = PortAllocator().assign(10, PortConfig.from_mode(7777, "even"), names(10))
        for kind in PortKind:
            ports = [item.get(kind) for item in result]
            assert len(set(ports)) == len(ports)
