import logging
import threading
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from .config import settings
from .errors import ServiceError
from .models import (
    AutoShutdownConfig,
    AutoShutdownReport,
    BackupInfo,
    BackupOptions,
    BulkResult,
    ClusterCreateResponse,
    ClusterRequest,
    ClusterSpec,
    ClusterSummary,
    CommandRequest,
    CommandResponse,
    CurseForgeMod,
    ExclusionsUpdate,
    GlobalConfig,
    GlobalConfigUpdate,
    JobAccepted,
    JobKind,
    LifecycleJob,
    ModConfig,
    ModOverride,
    ModsOverview,
    RegenerateResponse,
    RestoreRequest,
    ServerActionResponse,
    ServerOverride,
    ServerSpec,
    ServerStatus,
    SharedModsUpdate,
    StartScriptResponse,
    UpdateAllRequest,
)
from .services.backups import BackupService
from .services.cluster_service import ClusterService
from .services.curseforge_service import CurseForgeError, CurseForgeService
from .services.docker_supervisor import DockerSupervisor
from .services.jobs import JobTracker
from .services.native_supervisor import NativeSupervisor
from .services.orchestrator import LifecycleOrchestrator
from .services.store import SqliteConfigStore
from .services.supervisor import ProcessSupervisor

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("asa_manager")

app = FastAPI(title="ASA Cluster Manager")
curseforge = CurseForgeService()

_service: Optional[ClusterService] = None
_service_lock = threading.Lock()


def build_supervisor() -> ProcessSupervisor:
    if settings.supervisor == "native":
        return NativeSupervisor()
    if settings.supervisor != "docker":
        raise ValueError(f"Unknown SUPERVISOR {settings.supervisor!r}; use docker or native")
    return DockerSupervisor()


def build_service() -> ClusterService:
    store = SqliteConfigStore(settings.store_db_path)
    store.init_db()
    supervisor = build_supervisor()
    orchestrator = LifecycleOrchestrator(supervisor, backups=BackupService())
    jobs = JobTracker(db_path=settings.store_db_path)
    jobs.recover()
    service = ClusterService(store, supervisor, orchestrator=orchestrator, jobs=jobs)
    if service.auto_shutdown_config().enabled:
        service.start_auto_shutdown()
    return service


def get_service() -> ClusterService:
    global _service
    with _service_lock:
        if _service is None:
            _service = build_service()
            logger.info(
                "Cluster service ready (%s supervisor, data root %s)",
                settings.supervisor,
                settings.data_root,
            )
        return _service


@app.exception_handler(ServiceError)
def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.detail())


@app.exception_handler(CurseForgeError)
def curseforge_error_handler(request: Request, exc: CurseForgeError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Clusters


@app.get("/clusters", response_model=list[ClusterSummary])
def list_clusters(service: ClusterService = Depends(get_service)) -> list[ClusterSummary]:
    return [
        ClusterSummary(
            id=cluster.id,
            name=cluster.name,
            description=cluster.description,
            server_count=len(cluster.servers),
            created_at=cluster.created_at,
        )
        for cluster in service.list_clusters()
    ]


@app.post("/clusters/plan", response_model=ClusterSpec)
def plan_cluster(request: ClusterRequest, service: ClusterService = Depends(get_service)) -> ClusterSpec:
    return service.preview(request)


@app.post("/clusters", response_model=ClusterCreateResponse)
def create_cluster(
    request: ClusterRequest,
    background: bool = Query(False),
    service: ClusterService = Depends(get_service),
) -> ClusterCreateResponse:
    if background:
        job_id = service.create_cluster_job(request)
        return ClusterCreateResponse(message="Cluster creation queued", job_id=job_id)
    cluster = service.create_cluster(request)
    return ClusterCreateResponse(
        message=f"Created {len(cluster.servers)} servers", cluster=cluster
    )


@app.get("/clusters/{name}", response_model=ClusterSpec)
def get_cluster(name: str, service: ClusterService = Depends(get_service)) -> ClusterSpec:
    return service.get_cluster(name)


@app.put("/clusters/{name}", response_model=RegenerateResponse)
def update_cluster(
    name: str,
    request: ClusterRequest,
    force: bool = Query(False),
    service: ClusterService = Depends(get_service),
) -> RegenerateResponse:
    return service.update_cluster(name, request, force=force)


@app.delete("/clusters/{name}")
def delete_cluster(
    name: str,
    delete_files: bool = Query(False),
    backup_saved: bool = Query(False),
    service: ClusterService = Depends(get_service),
) -> dict:
    removed = service.delete_cluster(name, delete_files=delete_files, backup_saved=backup_saved)
    return {"message": f"Deleted cluster {name}", "servers": removed}


@app.post("/clusters/{name}/regenerate", response_model=RegenerateResponse)
def regenerate_cluster(
    name: str, force: bool = Query(False), service: ClusterService = Depends(get_service)
) -> RegenerateResponse:
    return service.regenerate_cluster(name, force=force)


@app.post("/clusters/{name}/start", response_model=BulkResult)
def start_cluster(name: str, service: ClusterService = Depends(get_service)) -> BulkResult:
    return service.start_cluster(name)


@app.post("/clusters/{name}/stop", response_model=BulkResult)
def stop_cluster(
    name: str,
    save: bool = Query(settings.save_before_stop),
    service: ClusterService = Depends(get_service),
) -> BulkResult:
    return service.stop_cluster(name, save=save)


@app.post("/clusters/{name}/restart", response_model=BulkResult)
def restart_cluster(name: str, service: ClusterService = Depends(get_service)) -> BulkResult:
    return service.restart_cluster(name)


# Servers


@app.get("/servers", response_model=list[ServerStatus])
def list_servers(service: ClusterService = Depends(get_service)) -> list[ServerStatus]:
    return service.list_statuses()


@app.post("/servers/update-all", response_model=JobAccepted)
def update_all(
    request: UpdateAllRequest,
    force: bool = Query(False),
    service: ClusterService = Depends(get_service),
) -> JobAccepted:
    job_id = service.update_all_job(request.names, force=force)
    return JobAccepted(job_id=job_id, kind=JobKind.UPDATE_ALL)


@app.get("/servers/{name}", response_model=ServerStatus)
def server_status(name: str, service: ClusterService = Depends(get_service)) -> ServerStatus:
    return service.server_status(name)


@app.post("/servers/{name}/start", response_model=ServerActionResponse)
def start_server(name: str, service: ClusterService = Depends(get_service)) -> ServerActionResponse:
    return service.start_server(name)


@app.post("/servers/{name}/stop", response_model=ServerActionResponse)
def stop_server(
    name: str,
    save: bool = Query(settings.save_before_stop),
    service: ClusterService = Depends(get_service),
) -> ServerActionResponse:
    return service.stop_server(name, save=save)


@app.post("/servers/{name}/restart", response_model=ServerActionResponse)
def restart_server(name: str, service: ClusterService = Depends(get_service)) -> ServerActionResponse:
    return service.restart_server(name)


@app.post("/servers/{name}/rcon", response_model=CommandResponse)
def send_command(
    name: str, request: CommandRequest, service: ClusterService = Depends(get_service)
) -> CommandResponse:
    return CommandResponse(name=name, output=service.send_command(name, request.command))


@app.get("/servers/{name}/logs")
def get_logs(
    name: str,
    follow: bool = Query(False),
    tail: int = Query(200, ge=0),
    service: ClusterService = Depends(get_service),
):
    if follow:
        return StreamingResponse(service.follow_logs(name), media_type="text/plain")
    return PlainTextResponse("\n".join(service.tail_logs(name, tail)))


@app.patch("/servers/{name}/settings", response_model=ServerSpec)
def update_server_settings(
    name: str,
    request: ServerOverride,
    force: bool = Query(False),
    service: ClusterService = Depends(get_service),
) -> ServerSpec:
    return service.update_server_settings(name, request, force=force)


@app.get("/servers/{name}/start-script", response_model=StartScriptResponse)
def start_script(name: str, service: ClusterService = Depends(get_service)) -> StartScriptResponse:
    return service.start_script(name)


@app.post("/servers/{name}/backup", response_model=BackupInfo)
def backup_server(
    name: str,
    options: Optional[BackupOptions] = None,
    service: ClusterService = Depends(get_service),
) -> BackupInfo:
    return service.backup_server(name, options)


@app.get("/servers/{name}/backups", response_model=list[BackupInfo])
def list_backups(name: str, service: ClusterService = Depends(get_service)) -> list[BackupInfo]:
    return service.list_backups(name)


@app.post("/servers/{name}/restore")
def restore_server(
    name: str, request: RestoreRequest, service: ClusterService = Depends(get_service)
) -> dict:
    restored = service.restore_server(name, request.source, request.options)
    return {"message": f"Restored {len(restored)} files", "files": restored}


@app.get("/servers/{name}/mods", response_model=ModOverride)
def get_server_mods(name: str, service: ClusterService = Depends(get_service)) -> ModOverride:
    return service.get_server_mods(name)


@app.put("/servers/{name}/mods", response_model=ModConfig)
def set_server_mods(
    name: str, request: ModOverride, service: ClusterService = Depends(get_service)
) -> ModConfig:
    return service.set_server_mods(name, request)


# Mods and global config


@app.get("/mods/shared", response_model=list[int])
def get_shared_mods(service: ClusterService = Depends(get_service)) -> list[int]:
    return list(service.mods.shared_mods)


@app.put("/mods/shared", response_model=ModConfig)
def set_shared_mods(
    request: SharedModsUpdate, service: ClusterService = Depends(get_service)
) -> ModConfig:
    return service.set_shared_mods(request.shared_mods)


@app.get("/mods/overview", response_model=ModsOverview)
def mods_overview(service: ClusterService = Depends(get_service)) -> ModsOverview:
    return service.mods_overview()


@app.get("/mods/{mod_id}", response_model=CurseForgeMod)
def lookup_mod(mod_id: int) -> CurseForgeMod:
    return curseforge.get_mod(mod_id)


@app.get("/config/global", response_model=GlobalConfig)
def get_global_config(service: ClusterService = Depends(get_service)) -> GlobalConfig:
    return service.global_config()


@app.put("/config/global", response_model=GlobalConfig)
def set_global_config(
    request: GlobalConfigUpdate,
    force: bool = Query(False),
    service: ClusterService = Depends(get_service),
) -> GlobalConfig:
    return service.set_global_config(
        request.game_user_settings,
        request.game_ini,
        force=force,
        excluded_servers=request.excluded_servers,
    )


@app.get("/config/exclusions", response_model=list[str])
def get_exclusions(service: ClusterService = Depends(get_service)) -> list[str]:
    return list(service.global_config().excluded_servers)


@app.put("/config/exclusions", response_model=GlobalConfig)
def set_exclusions(
    request: ExclusionsUpdate,
    force: bool = Query(False),
    service: ClusterService = Depends(get_service),
) -> GlobalConfig:
    return service.set_exclusions(request.excluded_servers, force=force)


# Jobs


@app.post("/system/install-binaries", response_model=JobAccepted)
def install_binaries(service: ClusterService = Depends(get_service)) -> JobAccepted:
    return JobAccepted(job_id=service.install_binaries_job(), kind=JobKind.INSTALL_BINARIES)


@app.get("/jobs", response_model=list[LifecycleJob])
def list_jobs(service: ClusterService = Depends(get_service)) -> list[LifecycleJob]:
    return service.jobs.list_jobs()


@app.get("/jobs/{job_id}", response_model=LifecycleJob)
def job_status(job_id: str, service: ClusterService = Depends(get_service)) -> LifecycleJob:
    return service.jobs.status(job_id)


@app.post("/jobs/{job_id}/cancel", response_model=LifecycleJob)
def cancel_job(job_id: str, service: ClusterService = Depends(get_service)) -> LifecycleJob:
    return service.jobs.cancel(job_id)


@app.get("/system/auto-shutdown", response_model=AutoShutdownConfig)
def get_auto_shutdown(service: ClusterService = Depends(get_service)) -> AutoShutdownConfig:
    return service.auto_shutdown_config()


@app.put("/system/auto-shutdown", response_model=AutoShutdownConfig)
def set_auto_shutdown(
    request: AutoShutdownConfig, service: ClusterService = Depends(get_service)
) -> AutoShutdownConfig:
    return service.set_auto_shutdown_config(request)


@app.post("/system/auto-shutdown/check", response_model=AutoShutdownReport)
def run_auto_shutdown(service: ClusterService = Depends(get_service)) -> AutoShutdownReport:
    return service.run_auto_shutdown()
