import sqlite3

import pytest

from asa_manager.errors import ServiceError
from asa_manager.models import ClusterSpec
from asa_manager.services.planner import ClusterPlanner
from asa_manager.services.store import CLUSTER, MOD_CONFIG, SINGLETON, SqliteConfigStore


@pytest.fixture
def sqlite_store(tmp_path):
    store = SqliteConfigStore(str(tmp_path / "state" / "manager.db"))
    store.init_db()
    return store


class TestSqliteConfigStore:
    def test_put_get_roundtrip(self, sqlite_store):
        sqlite_store.put(MOD_CONFIG, SINGLETON, {"shared_mods": [1, 2]})
        assert sqlite_store.get(MOD_CONFIG, SINGLETON) == {"shared_mods": [1, 2]}

    def test_missing_record(self, sqlite_store):
        assert sqlite_store.get(CLUSTER, "nope") is None

    def test_put_replaces(self, sqlite_store):
        sqlite_store.put(CLUSTER, "a", {"v": 1})
        sqlite_store.put(CLUSTER, "a", {"v": 2})
        assert sqlite_store.list(CLUSTER) == [{"v": 2}]

    def test_list_is_scoped_by_kind_and_sorted(self, sqlite_store):
        sqlite_store.put(CLUSTER, "b", {"name": "b"})
        sqlite_store.put(CLUSTER, "a", {"name": "a"})
        sqlite_store.put(MOD_CONFIG, SINGLETON, {"shared_mods": []})
        assert [record["name"] for record in sqlite_store.list(CLUSTER)] == ["a", "b"]

    def test_delete(self, sqlite_store):
        sqlite_store.put(CLUSTER, "a", {})
        assert sqlite_store.delete(CLUSTER, "a") is True
        assert sqlite_store.delete(CLUSTER, "a") is False

    def test_corrupt_record(self, sqlite_store):
        with sqlite3.connect(sqlite_store.db_path) as conn:
            conn.execute(
                "INSERT INTO records (kind, name, payload, updated_at) VALUES (?, ?, ?, ?)",
                (CLUSTER, "bad", "{not json", "now"),
            )
        with pytest.raises(ServiceError) as exc_info:
            sqlite_store.get(CLUSTER, "bad")
        assert exc_info.value.status_code == 500

    def test_cluster_spec_survives_storage(self, sqlite_store, three_map_request):
        cluster = ClusterPlanner().plan(three_map_request)
        sqlite_store.put(CLUSTER, cluster.name, cluster.model_dump(mode="json"))
        loaded = ClusterSpec.model_validate(sqlite_store.get(CLUSTER, cluster.name))
        assert loaded.model_dump() == cluster.model_dump()
