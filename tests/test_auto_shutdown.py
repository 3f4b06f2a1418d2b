import pytest

from asa_manager.models import AutoShutdownConfig, ServerState
from asa_manager.services.auto_shutdown import AutoShutdownMonitor, count_players


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += minutes * 60


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monitor(orchestrator, clock):
    config = AutoShutdownConfig(enabled=True, empty_timeout_minutes=30, warning_intervals=(15, 5))
    return AutoShutdownMonitor(orchestrator, config, clock=clock)


def chat_messages(supervisor, name):
    return [action for action in supervisor.actions(name) if action.startswith("exec:ServerChat")]


class TestCountPlayers:
    def test_no_players(self):
        assert count_players("No Players Connected\n") == 0

    def test_listed_players(self):
        output = "0. Alice, 0002a1b2c3\n1. Bob, 0002d4e5f6\n"
        assert count_players(output) == 2

    def test_blank_output(self):
        assert count_players("") == 0


class TestAutoShutdownMonitor:
    def test_empty_server_is_stopped_after_timeout(self, supervisor, monitor, clock):
        supervisor.states["srv1"] = ServerState.RUNNING
        supervisor.exec_output = "No Players Connected"

        first = monitor.check(["srv1"])
        assert first.empty == ["srv1"]
        assert first.stopped == []

        clock.advance(31)
        report = monitor.check(["srv1"])
        assert report.stopped == ["srv1"]
        assert supervisor.states["srv1"] is ServerState.STOPPED
        assert supervisor.actions("srv1")[-2:] == ["exec:saveworld", "stop"]
        assert monitor.empty_since("srv1") is None

    def test_players_reset_the_clock(self, supervisor, monitor, clock):
        supervisor.states["srv1"] = ServerState.RUNNING
        supervisor.exec_output = "No Players Connected"
        monitor.check(["srv1"])

        clock.advance(20)
        supervisor.exec_output = "0. Alice, 0002a1b2c3"
        assert monitor.check(["srv1"]).empty == []
        assert monitor.empty_since("srv1") is None

        clock.advance(20)
        supervisor.exec_output = "No Players Connected"
        assert monitor.check(["srv1"]).stopped == []
        assert supervisor.states["srv1"] is ServerState.RUNNING

    def test_warnings_are_sent_once_per_interval(self, supervisor, monitor, clock):
        supervisor.states["srv1"] = ServerState.RUNNING
        supervisor.exec_output = "No Players Connected"
        monitor.check(["srv1"])

        clock.advance(16)
        assert monitor.check(["srv1"]).warned == ["srv1"]
        clock.advance(1)
        assert monitor.check(["srv1"]).warned == []
        clock.advance(9)
        monitor.check(["srv1"])

        messages = chat_messages(supervisor, "srv1")
        assert messages == [
            "exec:ServerChat Server will shut down in 15 minutes due to inactivity",
            "exec:ServerChat Server will shut down in 5 minutes due to inactivity",
        ]

    def test_excluded_and_stopped_servers_are_skipped(self, supervisor, orchestrator, clock):
        supervisor.states["srv1"] = ServerState.RUNNING
        supervisor.states["srv2"] = ServerState.STOPPED
        config = AutoShutdownConfig(enabled=True, exclude_servers=("srv1",))
        monitor = AutoShutdownMonitor(orchestrator, config, clock=clock)
        report = monitor.check(["srv1", "srv2"])
        assert report.checked == []
        assert supervisor.actions() == []

    def test_failure_on_one_server_does_not_stop_the_pass(self, supervisor, monitor):
        supervisor.states["srv1"] = ServerState.RUNNING
        supervisor.states["srv2"] = ServerState.RUNNING
        supervisor.fail[("exec", "srv1")] = "rcon refused"
        supervisor.exec_output = "No Players Connected"
        report = monitor.check(["srv1", "srv2"])
        assert [failure.name for failure in report.failed] == ["srv1"]
        assert report.empty == ["srv2"]

    def test_reconfigure_clears_tracking(self, supervisor, monitor, clock):
        supervisor.states["srv1"] = ServerState.RUNNING
        supervisor.exec_output = "No Players Connected"
        monitor.check(["srv1"])
        monitor.configure(AutoShutdownConfig(enabled=True, empty_timeout_minutes=60))
        assert monitor.empty_since("srv1") is None


class TestServiceAutoShutdown:
    def test_config_persists(self, service, store, supervisor):
        config = AutoShutdownConfig(enabled=False, empty_timeout_minutes=12)
        service.set_auto_shutdown_config(config)
        assert service.auto_shutdown_config().empty_timeout_minutes == 12
        assert service.auto_shutdown.config.empty_timeout_minutes == 12

    def test_background_thread_follows_enabled_flag(self, service):
        service.set_auto_shutdown_config(AutoShutdownConfig(enabled=True, check_interval_seconds=60))
        assert service.auto_shutdown._thread is not None
        service.set_auto_shutdown_config(AutoShutdownConfig(enabled=False))
        assert service.auto_shutdown._thread is None
