import hashlib
import json
import logging
import os
import shlex
import shutil
import tempfile
from datetime import datetime, timezone
from typing import Optional

from ..config import settings
from ..errors import ArtifactConflict, NotFound, ServiceError
from ..models import GlobalConfig, IniSections, RuntimeArtifact, Scalar, ServerSpec

logger = logging.getLogger(__name__)

GAME_USER_SETTINGS = "GameUserSettings.ini"
GAME_INI = "Game.ini"
START_SCRIPT = "start.sh"
MANIFEST = ".artifacts.json"
CONFIG_SUBDIR = os.path.join("server-files", "ShooterGame", "Saved", "Config", "WindowsServer")
MOD_SEPARATOR = ","

DEFAULT_GAME_USER_SETTINGS: IniSections = {
    "ServerSettings": {
        "DifficultyOffset": 1.0,
        "HarvestAmountMultiplier": 1.0,
        "TamingSpeedMultiplier": 1.0,
        "XPMultiplier": 1.0,
        "AllowThirdPersonPlayer": True,
        "AlwaysNotifyPlayerLeft": True,
        "AlwaysNotifyPlayerJoined": True,
        "ServerCrosshair": True,
        "ServerForceNoHUD": False,
        "ServerHardcore": False,
        "ShowMapPlayerLocation": True,
        "AllowFlyerCarryPvE": True,
        "PreventOfflinePvP": True,
        "PreventOfflinePvPInterval": 300,
        "RCONEnabled": True,
    },
    "SessionSettings": {},
    "/Script/Engine.GameSession": {},
    "MultiHome": {"MultiHome": ""},
}

DEFAULT_GAME_INI: IniSections = {
    "/script/shootergame.shootergamemode": {
        "AllowCaveBuildingPvE": True,
        "AllowFlyingStaminaRecovery": True,
        "AllowUnlimitedRespecs": True,
        "PreventSpawnFlier": True,
        "MaxPlatformSaddleStructureLimit": 130,
    },
}


def merge_sections(*layers: IniSections) -> IniSections:
    merged: IniSections = {}
    for layer in layers:
        for section, values in layer.items():
            target = merged.setdefault(section, {})
            target.update(values)
    return merged


def format_value(value: Scalar) -> str:
    if isinstance(value, bool):
        return "True" if value else "False"
    if isinstance(value, float):
        return f"{value:.6f}"
    if value is None:
        return ""
    return str(value)


def render_ini(sections: IniSections) -> str:
    blocks: list[str] = []
    for section, values in sections.items():
        lines = [f"[{section}]"]
        lines.extend(f"{key}={format_value(value)}" for key, value in values.items())
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


def _launch_safe(value: str) -> str:
    # '?' separates URL options and '"' breaks the engine's own quoting.
    return value.replace("?", "").replace('"', "").strip()


class ArtifactGenerator:
    """Renders a ServerSpec into the files and launch line a supervisor needs.

    Output depends only on the ServerSpec, the global config and the paths given at
    construction, so unchanged inputs give byte-identical artifacts.
    """

    def __init__(
        self,
        cluster_dir: Optional[str] = None,
        server_binary: Optional[str] = None,
    ) -> None:
        self.cluster_dir = cluster_dir or settings.cluster_dir
        self.server_binary = server_binary or settings.server_binary

    def generate(self, spec: ServerSpec, global_config: Optional[GlobalConfig] = None) -> RuntimeArtifact:
        global_config = global_config or GlobalConfig()
        excluded = spec.name in global_config.excluded_servers

        launch_args = self.launch_args(spec)
        launch_command = shlex.join([self.server_binary, *launch_args])
        fragments = {
            GAME_USER_SETTINGS: render_ini(self.game_user_settings(spec, global_config, excluded)),
            GAME_INI: render_ini(self.game_ini(global_config, excluded)),
        }
        script = self.start_script(spec, launch_command)
        environment = self.environment(spec, launch_args)

        payload = json.dumps(
            {
                "launch_args": launch_args,
                "script": script,
                "fragments": fragments,
                "environment": environment,
            },
            sort_keys=True,
        )
        return RuntimeArtifact(
            server_name=spec.name,
            launch_args=tuple(launch_args),
            launch_command=launch_command,
            script_content=script,
            config_fragments=fragments,
            environment=environment,
            checksum=hashlib.sha256(payload.encode("utf-8")).hexdigest(),
        )

    def launch_args(self, spec: ServerSpec) -> list[str]:
        options = [
            f"{spec.map.value}?listen",
            f"SessionName={_launch_safe(spec.session_name)}",
            f"Port={spec.ports.game}",
            f"QueryPort={spec.ports.query}",
            "RCONEnabled=True",
            f"RCONPort={spec.ports.rcon}",
            f"MaxPlayers={spec.max_players}",
            f"ServerPassword={_launch_safe(spec.password or '')}",
            f"ServerAdminPassword={_launch_safe(spec.admin_password or '')}",
        ]
        args = ["?".join(options), f"-WinLiveMaxPlayers={spec.max_players}"]
        args.append(f"-clusterid={spec.cluster_id}")
        args.append(f"-ClusterDirOverride={self.cluster_dir}")
        if spec.settings.disable_battleye:
            args.append("-NoBattlEye")
        if spec.settings.custom_dynamic_config_url:
            args.append(f"-customdynamicconfigurl={spec.settings.custom_dynamic_config_url}")
        args.extend(spec.settings.extra_args)
        if spec.mods:
            args.append("-mods=" + MOD_SEPARATOR.join(str(mod_id) for mod_id in spec.mods))
        return args

    def game_user_settings(
        self, spec: ServerSpec, global_config: GlobalConfig, excluded: bool
    ) -> IniSections:
        game = spec.settings
        cluster_layer: IniSections = {
            "ServerSettings": {
                "DifficultyOffset": game.difficulty_offset,
                "HarvestAmountMultiplier": game.harvest_multiplier,
                "TamingSpeedMultiplier": game.taming_multiplier,
                "XPMultiplier": game.xp_multiplier,
            }
        }
        identity: IniSections = {
            "ServerSettings": {
                "ServerPassword": spec.password or "",
                "ServerAdminPassword": spec.admin_password or "",
                "RCONEnabled": True,
                "RCONPort": spec.ports.rcon,
            },
            "SessionSettings": {
                "SessionName": spec.session_name,
                "Port": spec.ports.game,
                "QueryPort": spec.ports.query,
            },
            "/Script/Engine.GameSession": {"MaxPlayers": spec.max_players},
        }
        overrides = {} if excluded else global_config.game_user_settings
        return merge_sections(DEFAULT_GAME_USER_SETTINGS, cluster_layer, overrides, identity)

    def game_ini(self, global_config: GlobalConfig, excluded: bool) -> IniSections:
        overrides = {} if excluded else global_config.game_ini
        return merge_sections(DEFAULT_GAME_INI, overrides)

    def start_script(self, spec: ServerSpec, launch_command: str) -> str:
        return "\n".join(
            [
                "#!/usr/bin/env bash",
                f"# {spec.name} ({spec.map.display_name}, cluster {spec.cluster_id})",
                "# Managed by asa-manager; regenerate instead of editing.",
                "set -euo pipefail",
                f"exec {launch_command}",
                "",
            ]
        )

    def environment(self, spec: ServerSpec, launch_args: list[str]) -> dict[str, str]:
        return {
            "ASA_START_PARAMS": shlex.join(launch_args),
            "SERVER_NAME": spec.name,
            "SERVER_MAP": spec.map.value,
            "SERVER_PORT": str(spec.ports.game),
            "QUERY_PORT": str(spec.ports.query),
            "RCON_PORT": str(spec.ports.rcon),
            "MAX_PLAYERS": str(spec.max_players),
            "MOD_IDS": MOD_SEPARATOR.join(str(mod_id) for mod_id in spec.mods),
            "CLUSTER_ID": spec.cluster_id,
        }


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ArtifactWriter:
    """Writes artifacts under ``<data_root>/<server>/`` with a checksum manifest.

    Files whose content no longer matches the manifest were edited outside
    the manager and are only overwritten with ``force=True``.
    """

    def __init__(self, data_root: Optional[str] = None) -> None:
        self.data_root = data_root or settings.data_root

    def server_dir(self, name: str) -> str:
        path = os.path.realpath(os.path.join(self.data_root, name))
        root = os.path.realpath(self.data_root)
        if not path.startswith(root + os.sep):
            raise ServiceError(400, "Server data path is invalid")
        return path

    def config_dir(self, name: str) -> str:
        return os.path.join(self.server_dir(name), CONFIG_SUBDIR)

    def script_path(self, name: str) -> str:
        return os.path.join(self.server_dir(name), START_SCRIPT)

    def write(self, artifact: RuntimeArtifact, force: bool = False) -> list[str]:
        name = artifact.server_name
        targets = self._targets(artifact)
        if not force:
            self.check(artifact)
        base = self.server_dir(name)

        written: list[str] = []
        checksums: dict[str, str] = {}
        for rel_path, content in targets.items():
            full_path = os.path.join(base, rel_path)
            data = content.encode("utf-8")
            checksums[rel_path] = _sha256(data)
            try:
                self._atomic_write(full_path, data)
            except OSError as exc:
                raise ServiceError(500, f"Failed to write {rel_path} for {name}: {exc}") from exc
            written.append(full_path)
        os.chmod(os.path.join(base, START_SCRIPT), 0o755)

        self._write_manifest(
            name,
            {
                "checksum": artifact.checksum,
                "generated_at": datetime.now(timezone.utc).isoformat(),
                "files": checksums,
            },
        )
        logger.info("Wrote %d artifacts for %s (checksum %s)", len(written), name, artifact.checksum[:12])
        return written

    def check(self, artifact: RuntimeArtifact) -> None:
        """Raise ArtifactConflict if any managed file was edited since it was written."""
        name = artifact.server_name
        recorded = self._read_manifest(name).get("files", {})
        base = self.server_dir(name)
        for rel_path in self._targets(artifact):
            full_path = os.path.join(base, rel_path)
            if rel_path not in recorded or not os.path.exists(full_path):
                continue
            with open(full_path, "rb") as handle:
                current = _sha256(handle.read())
            if current != recorded[rel_path]:
                raise ArtifactConflict(name, rel_path)

    def manifest(self, name: str) -> dict:
        return self._read_manifest(name)

    def read_script(self, name: str) -> tuple[str, str, str]:
        path = self.script_path(name)
        if not os.path.isfile(path):
            raise NotFound("start script", name)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                content = handle.read()
            modified = datetime.fromtimestamp(os.path.getmtime(path), tz=timezone.utc).isoformat()
        except OSError as exc:
            raise ServiceError(500, f"Failed to read start script: {exc}") from exc
        return path, content, modified

    def remove(self, name: str, delete_files: bool = False) -> None:
        base = self.server_dir(name)
        if delete_files:
            shutil.rmtree(base, ignore_errors=True)
            return
        manifest = self._read_manifest(name)
        for rel_path in manifest.get("files", {}):
            try:
                os.remove(os.path.join(base, rel_path))
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Failed to remove %s for %s: %s", rel_path, name, exc)
        try:
            os.remove(os.path.join(base, MANIFEST))
        except FileNotFoundError:
            pass

    def _targets(self, artifact: RuntimeArtifact) -> dict[str, str]:
        return {
            START_SCRIPT: artifact.script_content,
            **{
                os.path.join(CONFIG_SUBDIR, filename): content
                for filename, content in artifact.config_fragments.items()
            },
        }

    def _read_manifest(self, name: str) -> dict:
        path = os.path.join(self.server_dir(name), MANIFEST)
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable artifact manifest %s: %s", path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_manifest(self, name: str, manifest: dict) -> None:
        path = os.path.join(self.server_dir(name), MANIFEST)
        data = json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")
        self._atomic_write(path, data)

    def _atomic_write(self, path: str, data: bytes) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        handle = tempfile.NamedTemporaryFile(
            dir=os.path.dirname(path), prefix=".tmp-artifact-", delete=False
        )
        tmp_path = handle.name
        try:
            with handle:
                handle.write(data)
            os.replace(tmp_path, path)
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
