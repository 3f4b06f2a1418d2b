import threading
import time

import pytest

from asa_manager.errors import (
    NotFound,
    OperationTimedOut,
    RestartIncomplete,
    ServiceError,
    SupervisorCommandFailed,
)
from asa_manager.models import BackupOptions, RestoreOptions, ServerState
from asa_manager.services.backups import SAVES_SUBDIR
from asa_manager.services.orchestrator import KeyedLocks, LifecycleOrchestrator

from fakes import FakeSupervisor, RestartingSupervisor, SlowSupervisor


def running(supervisor, *names):
    for name in names:
        supervisor.states[name] = ServerState.RUNNING


def stopped(supervisor, *names):
    for name in names:
        supervisor.states[name] = ServerState.STOPPED


class TestStart:
    def test_start_stopped_server(self, supervisor, orchestrator):
        stopped(supervisor, "srv1")
        response = orchestrator.start("srv1")
        assert response.status == "started"
        assert orchestrator.state("srv1") is ServerState.RUNNING

    def test_start_is_idempotent(self, supervisor, orchestrator):
        """Starting a running server twice never reaches the supervisor."""
        running(supervisor, "srv1")
        first = orchestrator.start("srv1")
        second = orchestrator.start("srv1")
        assert first.message == second.message == "already running"
        assert "start" not in supervisor.actions("srv1")

    def test_failed_start_keeps_previous_state(self, supervisor, orchestrator):
        stopped(supervisor, "srv1")
        supervisor.fail[("start", "srv1")] = "port in use"
        with pytest.raises(SupervisorCommandFailed) as exc_info:
            orchestrator.start("srv1")
        assert "port in use" in exc_info.value.message
        assert orchestrator.state("srv1") is ServerState.STOPPED

    def test_unknown_server(self, orchestrator):
        with pytest.raises(NotFound):
            orchestrator.start("ghost")


class TestStop:
    def test_save_runs_before_stop(self, supervisor, orchestrator):
        running(supervisor, "srv1")
        orchestrator.stop("srv1")
        assert supervisor.actions("srv1") == ["exec:saveworld", "stop"]
        assert orchestrator.state("srv1") is ServerState.STOPPED

    def test_stop_proceeds_when_save_fails(self, supervisor, orchestrator):
        running(supervisor, "srv1")
        supervisor.fail[("exec", "srv1")] = "rcon refused"
        response = orchestrator.stop("srv1")
        assert supervisor.actions("srv1") == ["exec:saveworld", "stop"]
        assert response.status == "stopped"
        assert "save failed" in response.message

    def test_fast_stop_skips_save(self, supervisor, orchestrator):
        running(supervisor, "srv1")
        orchestrator.stop("srv1", save=False)
        assert supervisor.actions("srv1") == ["stop"]

    def test_stop_already_stopped(self, supervisor, orchestrator):
        stopped(supervisor, "srv1")
        response = orchestrator.stop("srv1")
        assert response.message == "already stopped"
        assert supervisor.actions("srv1") == []


class TestRestart:
    def test_restart_stopped_server_starts_it(self, supervisor, orchestrator):
        stopped(supervisor, "srv1")
        assert orchestrator.restart("srv1").status == "started"

    def test_stop_then_start_without_native_restart(self, supervisor, orchestrator):
        running(supervisor, "srv1")
        response = orchestrator.restart("srv1")
        assert response.status == "restarted"
        assert supervisor.actions("srv1") == ["exec:saveworld", "stop", "start"]

    def test_native_restart_used_when_available(self):
        supervisor = RestartingSupervisor()
        running(supervisor, "srv1")
        orchestrator = LifecycleOrchestrator(supervisor, timeout=5, save_command="saveworld")
        try:
            orchestrator.restart("srv1")
        finally:
            orchestrator.shutdown()
        assert supervisor.actions("srv1") == ["exec:saveworld", "restart"]

    def test_failed_start_after_stop_is_incomplete(self, supervisor, orchestrator):
        running(supervisor, "srv1")
        supervisor.fail[("start", "srv1")] = "boom"
        with pytest.raises(RestartIncomplete) as exc_info:
            orchestrator.restart("srv1")
        assert exc_info.value.status_code == 500
        assert orchestrator.state("srv1") is ServerState.STOPPED


class TestTimeouts:
    def test_timeout_marks_state_unknown(self):
        release = threading.Event()

        class BlockedSupervisor(FakeSupervisor):
            def start(self, name):
                release.wait(5)
                super().start(name)

        supervisor = BlockedSupervisor()
        stopped(supervisor, "srv1")
        orchestrator = LifecycleOrchestrator(supervisor, timeout=0.1, save_command="saveworld")
        try:
            with pytest.raises(OperationTimedOut) as exc_info:
                orchestrator.start("srv1")
            assert exc_info.value.status_code == 504
            assert orchestrator.state("srv1") is ServerState.UNKNOWN
        finally:
            release.set()
            orchestrator.shutdown()


class TestCommands:
    def test_send_command_requires_running(self, supervisor, orchestrator):
        stopped(supervisor, "srv1")
        with pytest.raises(ServiceError) as exc_info:
            orchestrator.send_command("srv1", "listplayers")
        assert exc_info.value.status_code == 409

    def test_send_command_returns_output(self, supervisor, orchestrator):
        running(supervisor, "srv1")
        supervisor.exec_output = "No Players Connected"
        assert orchestrator.send_command("srv1", "listplayers") == "No Players Connected"


class TestBulk:
    def test_partial_failure_is_reported_per_server(self, supervisor, orchestrator):
        stopped(supervisor, "s1", "s2", "s3")
        supervisor.fail[("start", "s2")] = "engine error"
        result = orchestrator.start_many(["s1", "s2", "s3"])
        assert result.successful == ["s1", "s3"]
        assert [failure.name for failure in result.failed] == ["s2"]
        assert result.total_processed == 3
        assert supervisor.states["s3"] is ServerState.RUNNING

    def test_unexpected_exception_is_captured(self, orchestrator):
        def action(name):
            raise RuntimeError("kaput")

        result = orchestrator.run_bulk(["a"], action)
        assert result.failed[0].error == "kaput"


class TestBackups:
    def test_backup_saves_running_server_first(self, supervisor, orchestrator, data_root):
        running(supervisor, "srv1")
        saves = data_root / "srv1" / SAVES_SUBDIR
        saves.mkdir(parents=True)
        (saves / "TheIsland_WP.ark").write_text("world")
        info = orchestrator.backup("srv1", BackupOptions(include_configs=False, include_scripts=False))
        assert supervisor.actions("srv1") == ["exec:saveworld"]
        assert info.size_bytes > 0

    def test_restore_stops_and_restarts_running_server(self, supervisor, orchestrator, data_root):
        running(supervisor, "srv1")
        saves = data_root / "srv1" / SAVES_SUBDIR
        saves.mkdir(parents=True)
        (saves / "TheIsland_WP.ark").write_text("v1")
        info = orchestrator.backup("srv1")
        (saves / "TheIsland_WP.ark").write_text("v2")

        restored = orchestrator.restore("srv1", info.name)
        assert (saves / "TheIsland_WP.ark").read_text() == "v1"
        assert restored
        assert supervisor.actions("srv1")[-2:] == ["stop", "start"]

    def test_restore_respects_start_after(self, supervisor, orchestrator, data_root):
        running(supervisor, "srv1")
        saves = data_root / "srv1" / SAVES_SUBDIR
        saves.mkdir(parents=True)
        (saves / "x.ark").write_text("v1")
        info = orchestrator.backup("srv1")
        orchestrator.restore("srv1", info.name, RestoreOptions(start_after=False))
        assert supervisor.states["srv1"] is ServerState.STOPPED


class TestKeyedLocks:
    def test_locks_are_per_name(self):
        locks = KeyedLocks()
        assert locks.get("a") is locks.get("a")
        assert locks.get("a") is not locks.get("b")

    def test_discard_keeps_a_held_lock(self):
        locks = KeyedLocks()
        lock = locks.get("a")
        with locks.hold("a"):
            locks.discard("a")
            assert locks.get("a") is lock
            assert locks.in_use("a")
        assert not locks.in_use("a")
        locks.discard("a")
        assert locks.get("a") is not lock

    def test_discard_while_waiting_keeps_exclusion(self):
        """A waiter still gets the same lock after the name is discarded."""
        locks = KeyedLocks()
        inside = []
        overlap = []
        entered = threading.Event()
        release = threading.Event()

        def first():
            with locks.hold("srv1"):
                inside.append("first")
                entered.set()
                release.wait(5)
                overlap.append(len(inside))
                inside.remove("first")

        def second():
            with locks.hold("srv1"):
                inside.append("second")
                overlap.append(len(inside))
                inside.remove("second")

        holder = threading.Thread(target=first)
        holder.start()
        entered.wait(5)
        waiter = threading.Thread(target=second)
        waiter.start()
        time.sleep(0.05)
        locks.discard("srv1")
        third = threading.Thread(target=second)
        third.start()
        time.sleep(0.05)
        release.set()
        for thread in (holder, waiter, third):
            thread.join(5)
        assert overlap == [1, 1, 1]


class TestConcurrency:
    def test_concurrent_starts_reach_supervisor_once(self):
        supervisor = SlowSupervisor(delay=0.1)
        stopped(supervisor, "srv1")
        orchestrator = LifecycleOrchestrator(supervisor, timeout=5, save_command="saveworld")
        barrier = threading.Barrier(4)
        responses = []

        def start():
            barrier.wait()
            responses.append(orchestrator.start("srv1").status)

        threads = [threading.Thread(target=start) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
        orchestrator.shutdown()

        assert supervisor.actions("srv1").count("start") == 1
        assert sorted(responses) == ["running", "running", "running", "started"]

    def test_different_names_run_in_parallel(self):
        supervisor = SlowSupervisor(delay=0.3)
        stopped(supervisor, "srv1", "srv2", "srv3")
        orchestrator = LifecycleOrchestrator(supervisor, timeout=5, save_command="saveworld")
        barrier = threading.Barrier(3)

        def start(name):
            barrier.wait()
            orchestrator.start(name)

        threads = [threading.Thread(target=start, args=(name,)) for name in ("srv1", "srv2", "srv3")]
        began = time.monotonic()
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(5)
        elapsed = time.monotonic() - began
        orchestrator.shutdown()

        assert supervisor.peak >= 2
        assert elapsed < 0.85
        assert all(supervisor.states[name] is ServerState.RUNNING for name in ("srv1", "srv2", "srv3"))
