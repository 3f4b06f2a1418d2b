import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


def _get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    if value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    return default


@dataclass(frozen=True)
class Settings:
    docker_base_url: str
    data_root: str
    host_data_root: str
    backup_root: str
    asa_image: str
    managed_label: str
    managed_label_value: str
    rcon_exec_command: str
    save_command: str
    supervisor_timeout_seconds: float
    job_workers: int
    store_db_path: str
    cluster_dir: str
    server_binary: str
    container_server_root: str
    curseforge_base_url: str
    curseforge_api_key: str | None
    save_before_stop: bool
    supervisor: str
    native_shell: str
    native_stop_grace_seconds: float
    native_rcon_host: str
    log_level: str


def load_settings() -> Settings:
    data_root = os.path.abspath(os.getenv("DATA_ROOT", "/data/asa"))
    host_data_root_env = os.getenv("HOST_DATA_ROOT")
    host_data_root = os.path.abspath(host_data_root_env) if host_data_root_env else data_root
    return Settings(
        docker_base_url=os.getenv("DOCKER_BASE_URL", "unix://var/run/docker.sock"),
        data_root=data_root,
        host_data_root=host_data_root,
        backup_root=os.path.abspath(os.getenv("BACKUP_ROOT", os.path.join(data_root, "_backups"))),
        asa_image=os.getenv("ASA_IMAGE", "mschnitzer/asa-linux-server:latest"),
        managed_label=os.getenv("MANAGED_LABEL", "asa.manager"),
        managed_label_value=os.getenv("MANAGED_LABEL_VALUE", "fastapi"),
        rcon_exec_command=os.getenv("RCON_EXEC_COMMAND", "asa-ctrl rcon --exec"),
        save_command=os.getenv("SAVE_COMMAND", "saveworld"),
        supervisor_timeout_seconds=_get_env_float("SUPERVISOR_TIMEOUT_SECONDS", 120.0),
        job_workers=_get_env_int("JOB_WORKERS", 4),
        store_db_path=os.getenv("STORE_DB_PATH") or os.path.join(data_root, "_state", "manager.db"),
        cluster_dir=os.getenv("CLUSTER_DIR", "/home/gameserver/cluster-shared"),
        server_binary=os.getenv(
            "SERVER_BINARY",
            "/home/gameserver/server-files/ShooterGame/Binaries/Win64/ArkAscendedServer.exe",
        ),
        container_server_root=os.getenv("CONTAINER_SERVER_ROOT", "/home/gameserver/server-files"),
        curseforge_base_url=os.getenv("CURSEFORGE_BASE_URL", "https://api.curseforge.com/v1"),
        curseforge_api_key=os.getenv("CURSEFORGE_API_KEY") or None,
        save_before_stop=_get_env_bool("SAVE_BEFORE_STOP", True),
        supervisor=os.getenv("SUPERVISOR", "docker").strip().lower(),
        native_shell=os.getenv("NATIVE_SHELL", "bash"),
        native_stop_grace_seconds=_get_env_float("NATIVE_STOP_GRACE_SECONDS", 60.0),
        native_rcon_host=os.getenv("NATIVE_RCON_HOST", "127.0.0.1"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


settings = load_settings()
