"""Shared fixtures for cluster manager tests."""

import pytest

from asa_manager.models import ClusterRequest
from asa_manager.services.artifacts import ArtifactGenerator, ArtifactWriter
from asa_manager.services.backups import BackupService
from asa_manager.services.cluster_service import ClusterService
from asa_manager.services.jobs import JobTracker
from asa_manager.services.orchestrator import LifecycleOrchestrator

from fakes import FakeSupervisor, InMemoryConfigStore


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest.fixture
def store():
    return InMemoryConfigStore()


@pytest.fixture
def data_root(tmp_path):
    root = tmp_path / "data"
    root.mkdir()
    return root


@pytest.fixture
def generator():
    return ArtifactGenerator(cluster_dir="/cluster", server_binary="/srv/ArkAscendedServer.exe")


@pytest.fixture
def orchestrator(supervisor, data_root, tmp_path):
    orch = LifecycleOrchestrator(
        supervisor,
        backups=BackupService(str(data_root), str(tmp_path / "backups")),
        timeout=5,
        save_command="saveworld",
    )
    yield orch
    orch.shutdown()


@pytest.fixture
def jobs():
    tracker = JobTracker(max_workers=2)
    yield tracker
    tracker.shutdown(wait=True)


@pytest.fixture
def service(store, supervisor, orchestrator, generator, data_root, jobs):
    return ClusterService(
        store,
        supervisor,
        orchestrator=orchestrator,
        generator=generator,
        writer=ArtifactWriter(str(data_root)),
        jobs=jobs,
    )


@pytest.fixture
def three_map_request():
    return ClusterRequest.model_validate(
        {
            "name": "alpha",
            "maps": [
                {"map": "TheIsland_WP", "count": 1},
                {"map": "ScorchedEarth_WP", "count": 1},
                {"map": "Aberration_WP", "count": 1},
            ],
            "ports": {
                "basePort": 7777,
                "portIncrement": 1,
                "queryPortBase": 27015,
                "queryPortIncrement": 1,
                "rconPortBase": 27020,
                "rconPortIncrement": 1,
            },
            "globalMods": [100, 200],
        }
    )
