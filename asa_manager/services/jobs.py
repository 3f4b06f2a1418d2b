import json
import logging
import os
import sqlite3
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel

from ..config import settings
from ..errors import NotFound, ServiceError
from ..models import JobKind, JobStatus, LifecycleJob

logger = logging.getLogger(__name__)

INTERRUPTED = "Interrupted"


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    return value


class JobContext:
    """Handed to job functions for progress reporting and cancellation checks."""

    def __init__(self, tracker: "JobTracker", job_id: str) -> None:
        self._tracker = tracker
        self.job_id = job_id

    @property
    def cancelled(self) -> bool:
        return self._tracker.status(self.job_id).status is JobStatus.CANCELLED

    def progress(self, percent: float, message: Optional[str] = None) -> None:
        self._tracker._report_progress(self.job_id, percent, message)


class JobTracker:
    def __init__(self, db_path: Optional[str] = None, max_workers: Optional[int] = None) -> None:
        self.db_path = db_path
        self._jobs: dict[str, LifecycleJob] = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers or settings.job_workers, thread_name_prefix="job"
        )
        if self.db_path:
            self.init_db()

    def init_db(self) -> None:
        os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    progress INTEGER NOT NULL,
                    message TEXT NOT NULL,
                    result TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def recover(self) -> list[str]:
        """Load persisted jobs, failing any that a previous process left unfinished."""
        if not self.db_path:
            return []
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM jobs ORDER BY created_at ASC").fetchall()
        interrupted: list[str] = []
        with self._lock:
            for row in rows:
                job = self._row_to_job(row)
                if not job.status.terminal:
                    job = job.model_copy(
                        update={
                            "status": JobStatus.FAILED,
                            "error": INTERRUPTED,
                            "updated_at": self._now(),
                        }
                    )
                    self._persist(job)
                    interrupted.append(job.id)
                self._jobs[job.id] = job
        if interrupted:
            logger.warning("Marked %d interrupted jobs as failed: %s", len(interrupted), interrupted)
        return interrupted

    def enqueue(self, kind: JobKind, fn: Callable[[JobContext], Any]) -> str:
        now = self._now()
        job = LifecycleJob(id=uuid.uuid4().hex, kind=kind, created_at=now, updated_at=now)
        with self._lock:
            self._jobs[job.id] = job
            self._persist(job)
        self._pool.submit(self._run, job.id, fn)
        logger.info("Queued %s job %s", kind.value, job.id)
        return job.id

    def status(self, job_id: str) -> LifecycleJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise NotFound("job", job_id)
        return job

    def list_jobs(self) -> list[LifecycleJob]:
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def cancel(self, job_id: str) -> LifecycleJob:
        self.status(job_id)
        if self._update(job_id, status=JobStatus.CANCELLED, message="cancelled"):
            logger.info("Cancelled job %s", job_id)
        return self.status(job_id)

    def shutdown(self, wait: bool = False) -> None:
        self._pool.shutdown(wait=wait)

    def _run(self, job_id: str, fn: Callable[[JobContext], Any]) -> None:
        if not self._update(job_id, status=JobStatus.RUNNING):
            return
        try:
            result = fn(JobContext(self, job_id))
        except ServiceError as exc:
            logger.warning("Job %s failed: %s", job_id, exc.message)
            self._update(job_id, status=JobStatus.FAILED, error=exc.message)
        except Exception as exc:
            logger.exception("Job %s crashed", job_id)
            self._update(job_id, status=JobStatus.FAILED, error=str(exc) or type(exc).__name__)
        else:
            self._update(job_id, status=JobStatus.COMPLETED, progress=100, result=_to_jsonable(result))

    def _report_progress(self, job_id: str, percent: float, message: Optional[str]) -> None:
        value = max(0, min(100, int(percent)))
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.terminal:
                return
            changes: dict[str, Any] = {"updated_at": self._now()}
            if value > job.progress:
                changes["progress"] = value
            if message is not None:
                changes["message"] = message
            job = job.model_copy(update=changes)
            self._jobs[job_id] = job
            self._persist(job)

    def _update(self, job_id: str, **changes: Any) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.terminal:
                return False
            changes["updated_at"] = self._now()
            job = job.model_copy(update=changes)
            self._jobs[job_id] = job
            self._persist(job)
            return True

    def _persist(self, job: LifecycleJob) -> None:
        if not self.db_path:
            return
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (id, kind, status, progress, message, result, error, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        status = excluded.status,
                        progress = excluded.progress,
                        message = excluded.message,
                        result = excluded.result,
                        error = excluded.error,
                        updated_at = excluded.updated_at
                    """,
                    (
                        job.id,
                        job.kind.value,
                        job.status.value,
                        job.progress,
                        job.message,
                        json.dumps(job.result, default=str) if job.result is not None else None,
                        job.error,
                        job.created_at.isoformat(),
                        job.updated_at.isoformat(),
                    ),
                )
        except sqlite3.Error as exc:
            logger.warning("Failed to persist job %s: %s", job.id, exc)

    def _row_to_job(self, row: sqlite3.Row) -> LifecycleJob:
        return LifecycleJob(
            id=row["id"],
            kind=JobKind(row["kind"]),
            status=JobStatus(row["status"]),
            progress=row["progress"],
            message=row["message"],
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)
