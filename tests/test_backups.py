import io
import tarfile

import pytest

from asa_manager.errors import NotFound, ServiceError
from asa_manager.models import BackupOptions, RestoreOptions
from asa_manager.services.artifacts import CONFIG_SUBDIR, START_SCRIPT
from asa_manager.services.backups import SAVES_SUBDIR, BackupService


@pytest.fixture
def backups(data_root, tmp_path):
    return BackupService(str(data_root), str(tmp_path / "backups"))


@pytest.fixture
def server(data_root):
    base = data_root / "srv1"
    (base / SAVES_SUBDIR).mkdir(parents=True)
    (base / SAVES_SUBDIR / "TheIsland_WP.ark").write_text("world")
    (base / CONFIG_SUBDIR).mkdir(parents=True)
    (base / CONFIG_SUBDIR / "Game.ini").write_text("[x]\n")
    (base / START_SCRIPT).write_text("#!/bin/sh\n")
    return base


def names_in(path):
    with tarfile.open(path) as archive:
        return {member.name for member in archive.getmembers() if member.isfile()}


class TestBackup:
    def test_full_backup(self, backups, server):
        info = backups.backup("srv1")
        members = names_in(info.path)
        assert f"{SAVES_SUBDIR}/TheIsland_WP.ark" in members
        assert f"{CONFIG_SUBDIR}/Game.ini" in members
        assert START_SCRIPT in members
        assert info.name.startswith("srv1-") and info.name.endswith(".tar.gz")

    def test_saves_only(self, backups, server):
        info = backups.backup("srv1", BackupOptions(include_configs=False, include_scripts=False))
        assert names_in(info.path) == {f"{SAVES_SUBDIR}/TheIsland_WP.ark"}

    def test_custom_destination(self, backups, server, tmp_path):
        destination = tmp_path / "elsewhere"
        info = backups.backup("srv1", BackupOptions(destination=str(destination)))
        assert info.path.startswith(str(destination))

    def test_nothing_to_back_up(self, backups, data_root):
        (data_root / "empty").mkdir()
        with pytest.raises(ServiceError) as exc_info:
            backups.backup("empty")
        assert exc_info.value.status_code == 404

    def test_list_backups(self, backups, server):
        first = backups.backup("srv1")
        second = backups.backup("srv1")
        listed = [item.name for item in backups.list_backups("srv1")]
        assert listed == sorted([first.name, second.name], reverse=True)
        assert backups.list_backups("other") == []


class TestRestore:
    def test_restore_overwrites(self, backups, server):
        info = backups.backup("srv1")
        (server / SAVES_SUBDIR / "TheIsland_WP.ark").write_text("changed")
        restored = backups.restore("srv1", info.name)
        assert (server / SAVES_SUBDIR / "TheIsland_WP.ark").read_text() == "world"
        assert f"{SAVES_SUBDIR}/TheIsland_WP.ark" in restored

    def test_restore_without_overwrite_keeps_existing(self, backups, server):
        info = backups.backup("srv1")
        (server / SAVES_SUBDIR / "TheIsland_WP.ark").write_text("changed")
        backups.restore("srv1", info.path, RestoreOptions(overwrite=False))
        assert (server / SAVES_SUBDIR / "TheIsland_WP.ark").read_text() == "changed"

    def test_missing_source(self, backups, server):
        with pytest.raises(NotFound):
            backups.restore("srv1", "nope.tar.gz")

    def test_member_escaping_server_dir_rejected(self, backups, server, tmp_path):
        path = tmp_path / "evil.tar.gz"
        with tarfile.open(path, "w:gz") as archive:
            data = b"pwned"
            member = tarfile.TarInfo("../escape.txt")
            member.size = len(data)
            archive.addfile(member, io.BytesIO(data))
        with pytest.raises(ServiceError) as exc_info:
            backups.restore("srv1", str(path))
        assert exc_info.value.status_code == 400
