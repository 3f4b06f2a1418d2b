import logging
import threading
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional

from ..errors import ArtifactConflict, NameConflict, NotFound, ServiceError
from ..models import (
    AutoShutdownConfig,
    AutoShutdownReport,
    BackupInfo,
    BackupOptions,
    BulkResult,
    ClusterRequest,
    ClusterSpec,
    GlobalConfig,
    IniSections,
    JobKind,
    ModConfig,
    ModOverride,
    ModsOverview,
    RegenerateResponse,
    RestoreOptions,
    RuntimeArtifact,
    ServerActionResponse,
    ServerOverride,
    ServerSpec,
    ServerState,
    ServerStatus,
    StartScriptResponse,
)
from .artifacts import ArtifactGenerator, ArtifactWriter
from .auto_shutdown import AutoShutdownMonitor
from .jobs import JobContext, JobTracker
from .mods import ModResolver
from .orchestrator import KeyedLocks, LifecycleOrchestrator
from .planner import ClusterPlanner
from .ports import reserved_from
from .store import AUTO_SHUTDOWN, CLUSTER, GLOBAL_CONFIG, MOD_CONFIG, SINGLETON, ConfigStore
from .supervisor import LogSource, ProcessSupervisor

logger = logging.getLogger(__name__)

ProgressFn = Callable[[float, Optional[str]], None]


def _no_progress(percent: float, message: Optional[str] = None) -> None:
    return None


def _clean_names(names: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(name.strip() for name in names if name.strip()))


class ClusterService:
    """Application facade: persisted clusters, artifacts and lifecycle in one place.

    Every change to clusters, port assignments and mod tables goes through
    here so planning always sees one consistent snapshot of the host.
    """

    def __init__(
        self,
        store: ConfigStore,
        supervisor: ProcessSupervisor,
        orchestrator: Optional[LifecycleOrchestrator] = None,
        planner: Optional[ClusterPlanner] = None,
        generator: Optional[ArtifactGenerator] = None,
        writer: Optional[ArtifactWriter] = None,
        jobs: Optional[JobTracker] = None,
        log_source: Optional[LogSource] = None,
        auto_shutdown: Optional[AutoShutdownMonitor] = None,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.orchestrator = orchestrator or LifecycleOrchestrator(supervisor)
        self.planner = planner or ClusterPlanner()
        self.generator = generator or ArtifactGenerator()
        self.writer = writer or ArtifactWriter()
        self.jobs = jobs or JobTracker()
        self.log_source = log_source or (supervisor if isinstance(supervisor, LogSource) else None)
        self.cluster_locks = KeyedLocks()
        self._plan_lock = threading.RLock()
        self.mods = ModResolver(self._load_mod_config())
        self.auto_shutdown = auto_shutdown or AutoShutdownMonitor(self.orchestrator)
        self.auto_shutdown.configure(self.auto_shutdown_config())

    # Records

    def list_clusters(self) -> list[ClusterSpec]:
        return [ClusterSpec.model_validate(record) for record in self.store.list(CLUSTER)]

    def get_cluster(self, name: str) -> ClusterSpec:
        record = self.store.get(CLUSTER, name)
        if record is None:
            raise NotFound("cluster", name)
        return ClusterSpec.model_validate(record)

    def find_server(self, name: str) -> tuple[ClusterSpec, ServerSpec]:
        for cluster in self.list_clusters():
            spec = cluster.server(name)
            if spec is not None:
                return cluster, spec
        raise NotFound("server", name)

    def all_servers(self) -> list[ServerSpec]:
        return [spec for cluster in self.list_clusters() for spec in cluster.servers]

    def global_config(self) -> GlobalConfig:
        record = self.store.get(GLOBAL_CONFIG, SINGLETON)
        return GlobalConfig.model_validate(record) if record else GlobalConfig()

    # Planning

    def preview(self, request: ClusterRequest) -> ClusterSpec:
        with self._plan_lock:
            return self._plan(request)

    def create_cluster(self, request: ClusterRequest, progress: ProgressFn = _no_progress) -> ClusterSpec:
        with self.cluster_locks.hold(request.name):
            with self._plan_lock:
                if self.store.get(CLUSTER, request.name) is not None:
                    raise NameConflict(request.name)
                cluster = self._plan(request).model_copy(
                    update={"created_at": datetime.now(timezone.utc)}
                )
                self._save_cluster(cluster)
            progress(10, f"Planned {len(cluster.servers)} servers")

            global_config = self.global_config()
            created: list[str] = []
            try:
                for position, spec in enumerate(cluster.servers, start=1):
                    artifact = self.generator.generate(spec, global_config)
                    self.writer.write(artifact, force=True)
                    self.supervisor.create(spec, artifact)
                    created.append(spec.name)
                    progress(10 + 90 * position / len(cluster.servers), f"Provisioned {spec.name}")
            except ServiceError:
                self._rollback(cluster, created)
                raise
            logger.info("Created cluster %s with %d servers", cluster.name, len(cluster.servers))
            return cluster

    def create_cluster_job(self, request: ClusterRequest) -> str:
        # Reject invalid requests now rather than inside the job.
        self.preview(request)
        if self.store.get(CLUSTER, request.name) is not None:
            raise NameConflict(request.name)

        def run(ctx: JobContext) -> ClusterSpec:
            return self.create_cluster(request, progress=ctx.progress)

        return self.jobs.enqueue(JobKind.CREATE_CLUSTER, run)

    def update_cluster(self, name: str, request: ClusterRequest, force: bool = False) -> RegenerateResponse:
        if request.name != name:
            raise ServiceError(400, "Cluster name cannot be changed")
        self.get_cluster(name)
        return self._replan(name, request, force=force)

    def regenerate_cluster(self, name: str, force: bool = False) -> RegenerateResponse:
        return self._replan(name, self.get_cluster(name).request, force=force)

    def delete_cluster(self, name: str, delete_files: bool = False, backup_saved: bool = False) -> list[str]:
        with self.cluster_locks.hold(name):
            cluster = self.get_cluster(name)
            removed: list[str] = []
            for spec in cluster.servers:
                if backup_saved:
                    try:
                        self.orchestrator.backup(spec.name)
                    except ServiceError as exc:
                        logger.warning("Backup of %s before delete failed: %s", spec.name, exc.message)
                self._remove_server(spec.name, delete_files)
                removed.append(spec.name)
            self.store.delete(CLUSTER, name)
            logger.info("Deleted cluster %s (%d servers)", name, len(removed))
            return removed

    def update_server_settings(
        self, name: str, override: ServerOverride, force: bool = False
    ) -> ServerSpec:
        cluster, _ = self.find_server(name)
        current = cluster.request.server_overrides.get(name, ServerOverride())
        merged = ServerOverride.model_validate(
            {**current.model_dump(exclude_none=True), **override.model_dump(exclude_none=True)}
        )
        overrides = {**cluster.request.server_overrides, name: merged}
        request = cluster.request.model_copy(update={"server_overrides": overrides})
        result = self._replan(cluster.name, request, force=force)
        spec = result.cluster.server(name)
        if spec is None:
            raise NotFound("server", name)
        return spec

    # Mods and global config

    def set_shared_mods(self, mods: list[int]) -> ModConfig:
        config = self.mods.set_shared_mods(mods)
        self._save_mod_config(config)
        self._replan_all()
        return config

    def get_server_mods(self, name: str) -> ModOverride:
        cluster, _ = self.find_server(name)
        return cluster.request.server_mods.get(name) or self.mods.server_override(name)

    def set_server_mods(self, name: str, override: ModOverride) -> ModConfig:
        cluster, _ = self.find_server(name)
        config = self.mods.set_server_mods(name, override)
        self._save_mod_config(config)
        if name in cluster.request.server_mods:
            server_mods = dict(cluster.request.server_mods)
            server_mods.pop(name)
            request = cluster.request.model_copy(update={"server_mods": server_mods})
            self._replan(cluster.name, request)
        else:
            self._replan(cluster.name, cluster.request)
        return config

    def mods_overview(self) -> ModsOverview:
        return self.mods.overview(total_servers=len(self.all_servers()))

    def set_global_config(
        self,
        game_user_settings: Optional[IniSections] = None,
        game_ini: Optional[IniSections] = None,
        force: bool = False,
        excluded_servers: Optional[Iterable[str]] = None,
    ) -> GlobalConfig:
        current = self.global_config()
        updates = {}
        if game_user_settings is not None:
            updates["game_user_settings"] = game_user_settings
        if game_ini is not None:
            updates["game_ini"] = game_ini
        if excluded_servers is not None:
            updates["excluded_servers"] = _clean_names(excluded_servers)
        config = GlobalConfig.model_validate({**current.model_dump(), **updates})
        self.store.put(GLOBAL_CONFIG, SINGLETON, config.model_dump(mode="json"))
        self._rewrite_all(force=force)
        return config

    def set_exclusions(self, excluded_servers: Iterable[str], force: bool = False) -> GlobalConfig:
        return self.set_global_config(excluded_servers=excluded_servers, force=force)

    # Artifacts

    def artifact_for(self, name: str) -> RuntimeArtifact:
        _, spec = self.find_server(name)
        return self.generator.generate(spec, self.global_config())

    def start_script(self, name: str) -> StartScriptResponse:
        cluster, _ = self.find_server(name)
        path, content, modified = self.writer.read_script(name)
        return StartScriptResponse(
            server_name=name,
            cluster_name=cluster.name,
            script_path=path,
            content=content,
            last_modified=modified,
        )

    # Lifecycle

    def server_status(self, name: str) -> ServerStatus:
        self.find_server(name)
        return self.orchestrator.status(name)

    def list_statuses(self) -> list[ServerStatus]:
        statuses = []
        for spec in self.all_servers():
            try:
                statuses.append(self.orchestrator.status(spec.name))
            except ServiceError as exc:
                logger.warning("Status of %s unavailable: %s", spec.name, exc.message)
                statuses.append(ServerStatus(name=spec.name, status=ServerState.UNKNOWN, ports=spec.ports))
        return statuses

    def start_server(self, name: str) -> ServerActionResponse:
        self.find_server(name)
        return self.orchestrator.start(name)

    def stop_server(self, name: str, save: bool = True) -> ServerActionResponse:
        self.find_server(name)
        return self.orchestrator.stop(name, save=save)

    def restart_server(self, name: str) -> ServerActionResponse:
        self.find_server(name)
        return self.orchestrator.restart(name)

    def send_command(self, name: str, command: str) -> str:
        self.find_server(name)
        return self.orchestrator.send_command(name, command)

    def start_cluster(self, name: str) -> BulkResult:
        return self.orchestrator.start_many(self._server_names(name))

    def stop_cluster(self, name: str, save: bool = True) -> BulkResult:
        return self.orchestrator.stop_many(self._server_names(name), save=save)

    def restart_cluster(self, name: str) -> BulkResult:
        return self.orchestrator.restart_many(self._server_names(name))

    def backup_server(self, name: str, options: Optional[BackupOptions] = None) -> BackupInfo:
        self.find_server(name)
        return self.orchestrator.backup(name, options)

    def restore_server(self, name: str, source: str, options: Optional[RestoreOptions] = None) -> list[str]:
        self.find_server(name)
        return self.orchestrator.restore(name, source, options)

    def list_backups(self, name: str) -> list[BackupInfo]:
        self.find_server(name)
        return self.orchestrator.backups.list_backups(name)

    def tail_logs(self, name: str, lines: int = 200) -> list[str]:
        self.find_server(name)
        return self._logs().tail(name, lines)

    def follow_logs(self, name: str) -> Iterator[bytes]:
        self.find_server(name)
        return self._logs().follow(name)

    # Updates and installs

    def update_server(self, name: str, force: bool = False) -> str:
        """Rewrite a server's artifacts and recreate it so the supervisor picks them up."""
        _, spec = self.find_server(name)
        artifact = self.generator.generate(spec, self.global_config())
        with self.orchestrator.locks.hold(name):
            self.writer.write(artifact, force=force)
            self._recreate([(spec, artifact)])
        logger.info("Updated %s (checksum %s)", name, artifact.checksum[:12])
        return artifact.checksum

    def update_all(self, names: Optional[list[str]] = None, force: bool = False) -> BulkResult:
        targets = names if names is not None else [spec.name for spec in self.all_servers()]
        return self.orchestrator.update_all(targets, lambda name: self.update_server(name, force=force))

    def update_all_job(self, names: Optional[list[str]] = None, force: bool = False) -> str:
        targets = names if names is not None else [spec.name for spec in self.all_servers()]

        def run(ctx: JobContext) -> BulkResult:
            done = 0

            def update(name: str) -> str:
                nonlocal done
                if ctx.cancelled:
                    raise ServiceError(409, "Update cancelled")
                try:
                    return self.update_server(name, force=force)
                finally:
                    done += 1
                    ctx.progress(100 * done / max(len(targets), 1), f"Processed {name}")

            return self.orchestrator.update_all(targets, update)

        return self.jobs.enqueue(JobKind.UPDATE_ALL, run)

    def install_binaries_job(self) -> str:
        installer = getattr(self.supervisor, "install_binaries", None)
        if not callable(installer):
            raise ServiceError(501, "This supervisor cannot install server binaries")

        def run(ctx: JobContext) -> dict:
            ctx.progress(5, "Installing server binaries")
            return {"image": installer()}

        return self.jobs.enqueue(JobKind.INSTALL_BINARIES, run)

    # Auto-shutdown

    def auto_shutdown_config(self) -> AutoShutdownConfig:
        record = self.store.get(AUTO_SHUTDOWN, SINGLETON)
        return AutoShutdownConfig.model_validate(record) if record else AutoShutdownConfig()

    def set_auto_shutdown_config(self, config: AutoShutdownConfig) -> AutoShutdownConfig:
        self.store.put(AUTO_SHUTDOWN, SINGLETON, config.model_dump(mode="json"))
        self.auto_shutdown.configure(config)
        if config.enabled:
            self.start_auto_shutdown()
        else:
            self.auto_shutdown.stop()
        logger.info("Auto-shutdown %s", "enabled" if config.enabled else "disabled")
        return config

    def start_auto_shutdown(self) -> None:
        self.auto_shutdown.start(lambda: [spec.name for spec in self.all_servers()])

    def run_auto_shutdown(self) -> AutoShutdownReport:
        return self.auto_shutdown.check([spec.name for spec in self.all_servers()])

    # Internals

    def _plan(self, request: ClusterRequest) -> ClusterSpec:
        others = [cluster for cluster in self.list_clusters() if cluster.name != request.name]
        servers = [spec for cluster in others for spec in cluster.servers]
        taken_names = {spec.name: cluster.name for cluster in others for spec in cluster.servers}
        return self.planner.plan(
            request,
            reserved=reserved_from(servers),
            mod_config=self.mods.config,
            taken_names=taken_names,
        )

    def _replan(self, name: str, request: ClusterRequest, force: bool = False) -> RegenerateResponse:
        with self.cluster_locks.hold(name):
            with self._plan_lock:
                previous = self.get_cluster(name)
                cluster = self._plan(request).model_copy(update={"created_at": previous.created_at})
                global_config = self.global_config()
                artifacts = [self.generator.generate(spec, global_config) for spec in cluster.servers]
                # Nothing is touched until every server's files pass the hand-edit check.
                if not force:
                    for artifact in artifacts:
                        self.writer.check(artifact)
                self._save_cluster(cluster)

            new_names = {spec.name for spec in cluster.servers}
            for spec in previous.servers:
                if spec.name not in new_names:
                    self._remove_server(spec.name, delete_files=False)

            written: list[str] = []
            moved: list[tuple[ServerSpec, RuntimeArtifact]] = []
            for spec, artifact in zip(cluster.servers, artifacts):
                written.extend(self.writer.write(artifact, force=True))
                before = previous.server(spec.name)
                if before is None or not self._provisioned(spec.name):
                    self.supervisor.create(spec, artifact)
                elif before.ports != spec.ports:
                    moved.append((spec, artifact))
            if moved:
                self._recreate(moved)
            return RegenerateResponse(cluster=cluster, written=written)

    def _replan_all(self) -> None:
        for cluster in self.list_clusters():
            try:
                self._replan(cluster.name, cluster.request)
            except ArtifactConflict as exc:
                logger.warning("Skipped replanning %s: %s", cluster.name, exc.message)

    def _provisioned(self, name: str) -> bool:
        try:
            self.orchestrator.status(name)
        except NotFound:
            return False
        return True

    def _recreate(self, targets: list[tuple[ServerSpec, RuntimeArtifact]]) -> None:
        """Recreate servers with a new supervisor definition, restarting the ones that ran.

        All targets are stopped before any is started again so swapped ports
        are free by the time they are bound.
        """
        names = [spec.name for spec, _ in targets]
        with ExitStack() as stack:
            for name in sorted(names):
                stack.enter_context(self.orchestrator.locks.hold(name))
            running = set()
            for name in names:
                try:
                    if self.orchestrator.status(name).status is ServerState.RUNNING:
                        running.add(name)
                except NotFound:
                    continue
            for name in names:
                if name in running:
                    self.orchestrator.stop(name)
            for spec, artifact in targets:
                self.supervisor.create(spec, artifact)
            for name in names:
                if name in running:
                    self.orchestrator.start(name)
        logger.info("Recreated %s", ", ".join(names))

    def _rewrite_all(self, force: bool = False) -> None:
        global_config = self.global_config()
        for spec in self.all_servers():
            try:
                self.writer.write(self.generator.generate(spec, global_config), force=force)
            except ArtifactConflict as exc:
                logger.warning("Skipped artifacts for %s: %s", spec.name, exc.message)

    def _remove_server(self, name: str, delete_files: bool) -> None:
        try:
            self.orchestrator.stop(name)
        except NotFound:
            pass
        except ServiceError as exc:
            logger.warning("Stopping %s before removal failed: %s", name, exc.message)
        try:
            self.supervisor.remove(name)
        except NotFound:
            pass
        self.writer.remove(name, delete_files=delete_files)
        self._save_mod_config(self.mods.remove_server(name))
        self.orchestrator.forget(name)

    def _rollback(self, cluster: ClusterSpec, created: list[str]) -> None:
        logger.warning("Rolling back cluster %s after provisioning failure", cluster.name)
        for name in created:
            try:
                self.supervisor.remove(name)
            except ServiceError as exc:
                logger.warning("Rollback could not remove %s: %s", name, exc.message)
        for spec in cluster.servers:
            self.writer.remove(spec.name, delete_files=False)
        self.store.delete(CLUSTER, cluster.name)

    def _server_names(self, cluster_name: str) -> list[str]:
        return [spec.name for spec in self.get_cluster(cluster_name).servers]

    def _logs(self) -> LogSource:
        if self.log_source is None:
            raise ServiceError(501, "This supervisor does not expose logs")
        return self.log_source

    def _save_cluster(self, cluster: ClusterSpec) -> None:
        self.store.put(CLUSTER, cluster.name, cluster.model_dump(mode="json"))

    def _load_mod_config(self) -> ModConfig:
        record = self.store.get(MOD_CONFIG, SINGLETON)
        return ModConfig.model_validate(record) if record else ModConfig()

    def _save_mod_config(self, config: ModConfig) -> None:
        self.store.put(MOD_CONFIG, SINGLETON, config.model_dump(mode="json"))
