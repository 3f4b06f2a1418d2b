import logging
import os
import tarfile
from datetime import datetime, timezone
from typing import Optional

from ..config import settings
from ..errors import NotFound, ServiceError
from ..models import BackupInfo, BackupOptions, RestoreOptions
from .artifacts import CONFIG_SUBDIR, MANIFEST, START_SCRIPT

logger = logging.getLogger(__name__)

SAVES_SUBDIR = os.path.join("server-files", "ShooterGame", "Saved", "SavedArks")
ARCHIVE_SUFFIX = ".tar.gz"


class BackupService:
    """Snapshots a server's saves, generated configs and start script as tarballs."""

    def __init__(self, data_root: Optional[str] = None, backup_root: Optional[str] = None) -> None:
        self.data_root = data_root or settings.data_root
        self.backup_root = backup_root or settings.backup_root

    def backup(self, name: str, options: Optional[BackupOptions] = None) -> BackupInfo:
        options = options or BackupOptions()
        base = self._server_dir(name)
        members: list[str] = []
        if options.include_saves:
            members.append(SAVES_SUBDIR)
        if options.include_configs:
            members.append(CONFIG_SUBDIR)
        if options.include_scripts:
            members.extend([START_SCRIPT, MANIFEST])
        members = [member for member in members if os.path.exists(os.path.join(base, member))]
        if not members:
            raise ServiceError(404, f"Nothing to back up for {name}")

        destination = options.destination or os.path.join(self.backup_root, name)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
        path = os.path.join(destination, f"{name}-{stamp}{ARCHIVE_SUFFIX}")
        try:
            os.makedirs(destination, exist_ok=True)
            with tarfile.open(path, "w:gz") as archive:
                for member in members:
                    archive.add(os.path.join(base, member), arcname=member)
        except (OSError, tarfile.TarError) as exc:
            raise ServiceError(500, f"Failed to back up {name}: {exc}") from exc
        logger.info("Backed up %s to %s (%s)", name, path, ", ".join(members))
        return self._info(name, path)

    def list_backups(self, name: str) -> list[BackupInfo]:
        directory = os.path.join(self.backup_root, name)
        if not os.path.isdir(directory):
            return []
        backups = [
            self._info(name, os.path.join(directory, entry))
            for entry in os.listdir(directory)
            if entry.endswith(ARCHIVE_SUFFIX)
        ]
        backups.sort(key=lambda item: item.name, reverse=True)
        return backups

    def restore(self, name: str, source: str, options: Optional[RestoreOptions] = None) -> list[str]:
        options = options or RestoreOptions()
        path = self._resolve_source(name, source)
        base = self._server_dir(name)
        restored: list[str] = []
        try:
            with tarfile.open(path, "r:*") as archive:
                for member in archive.getmembers():
                    target = self._safe_target(base, member.name)
                    if member.isdir():
                        continue
                    if os.path.exists(target) and not options.overwrite:
                        continue
                    archive.extract(member, base, filter="data")
                    restored.append(member.name)
        except (OSError, tarfile.TarError) as exc:
            raise ServiceError(500, f"Failed to restore {name} from {source}: {exc}") from exc
        logger.info("Restored %d files into %s from %s", len(restored), name, path)
        return restored

    def _server_dir(self, name: str) -> str:
        root = os.path.realpath(self.data_root)
        path = os.path.realpath(os.path.join(root, name))
        if not path.startswith(root + os.sep):
            raise ServiceError(400, "Server data path is invalid")
        return path

    def _resolve_source(self, name: str, source: str) -> str:
        candidates = [source, os.path.join(self.backup_root, name, source)]
        for candidate in candidates:
            if os.path.isabs(candidate) and os.path.isfile(candidate):
                return candidate
        raise NotFound("backup", source)

    def _safe_target(self, base: str, member_name: str) -> str:
        target = os.path.realpath(os.path.join(base, member_name))
        if not target.startswith(base + os.sep):
            raise ServiceError(400, f"Backup member escapes the server directory: {member_name}")
        return target

    def _info(self, name: str, path: str) -> BackupInfo:
        stat = os.stat(path)
        return BackupInfo(
            server_name=name,
            name=os.path.basename(path),
            path=path,
            size_bytes=int(stat.st_size),
            created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
        )
