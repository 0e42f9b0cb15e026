import json
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from cancellation import CancelToken
from errors import DuplicateJobIdError, RegistryError
from log_config import get_logger
from models import TERMINAL_STATUSES, Job, JobStatus, PhaseInfo

logger = get_logger(__name__)


DB_FILE = "retrievectl.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    command TEXT NOT NULL,
    args TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL DEFAULT 'pending',
    progress INTEGER NOT NULL DEFAULT 0,
    operation_id TEXT,
    phase TEXT,
    total_items INTEGER,
    completed_items INTEGER,
    failed_items INTEGER,
    cancel_requested INTEGER NOT NULL DEFAULT 0,
    cancel_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    error TEXT,
    result TEXT,
    pid INTEGER
);

-- Speeds up status filters and the worker's pending-job lookup
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs (status);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS metrics (
    stat_key TEXT PRIMARY KEY,
    stat_value INTEGER NOT NULL DEFAULT 0
);

INSERT INTO metrics (stat_key, stat_value) VALUES ('jobs_completed', 0)
    ON CONFLICT(stat_key) DO NOTHING;
INSERT INTO metrics (stat_key, stat_value) VALUES ('jobs_failed', 0)
    ON CONFLICT(stat_key) DO NOTHING;
INSERT INTO metrics (stat_key, stat_value) VALUES ('jobs_cancelled', 0)
    ON CONFLICT(stat_key) DO NOTHING;
"""

CONFIG_DEFAULTS = {
    "max_retries": "3",
    "backoff_base": "2",
    "chunk_size": "5",
    "default_timeout": "300",
    "progress_interval": "1",
    "mock_delay_ms": "50",
    "output_dir": "retrieved",
    "aggregator_url": None,
    "dispatch": "spawn",
}

_ACTIVE = (JobStatus.PENDING.value, JobStatus.RUNNING.value)

_METRIC_FOR_STATUS = {
    JobStatus.COMPLETED: "jobs_completed",
    JobStatus.FAILED: "jobs_failed",
    JobStatus.CANCELLED: "jobs_cancelled",
}


def default_db_path() -> str:
    return os.environ.get("RETRIEVECTL_DB", DB_FILE)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def pid_alive(pid: int) -> bool:
    """Whether a process with ``pid`` still exists on this host."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, but owned by another user
        return True
    return True


def generate_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class JobRegistry:
    """
    System of record for background jobs, backed by SQLite.

    Every mutation is a single guarded UPDATE or runs inside a BEGIN IMMEDIATE
    transaction, so writes to one job are serialized across threads and processes.
    Readers always get fresh Job objects, never shared references.
    """

    def __init__(self, db_path: str = None):
        self.db_path = db_path or default_db_path()
        self._tokens: Dict[str, CancelToken] = {}
        self._tokens_lock = threading.Lock()
        self.initialize()

    @contextmanager
    def connect(self, immediate: bool = False):
        """Yields a connection; commits on success, rolls back on error."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Creates the tables if they are missing."""
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        try:
            with self.connect() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise RegistryError(f"Could not initialize database {self.db_path}: {e}") from e

    # --- jobs ---

    def create_job(self, command: str, args: dict = None, job_id: str = None) -> Job:
        """
        Inserts a new pending job.

        A caller-supplied ``job_id`` must be unique; the existing job is left untouched
        and DuplicateJobIdError is raised otherwise.
        """
        job_id = job_id or generate_job_id()
        now = _now()
        sql = """
        INSERT INTO jobs (id, command, args, status, progress, created_at, updated_at)
        VALUES (?, ?, ?, ?, 0, ?, ?)
        """
        try:
            with self.connect() as conn:
                conn.execute(sql, [job_id, command, json.dumps(args or {}), JobStatus.PENDING.value, now, now])
        except sqlite3.IntegrityError:
            raise DuplicateJobIdError(job_id)
        except sqlite3.Error as e:
            raise RegistryError(f"An error occurred while creating job {job_id}: {e}") from e

        logger.info("job_created", job_id=job_id, command=command)
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            with self.connect() as conn:
                row = conn.execute("SELECT * FROM jobs WHERE id = ?", [job_id]).fetchone()
        except sqlite3.Error as e:
            raise RegistryError(f"An error occurred while reading job {job_id}: {e}") from e
        return Job.from_row(row) if row else None

    def list_jobs(self, statuses: Iterable[JobStatus] = None, limit: int = None) -> List[Job]:
        """Returns jobs in insertion order, optionally filtered by status."""
        sql = "SELECT * FROM jobs"
        params = []
        if statuses:
            values = [JobStatus(s).value for s in statuses]
            sql += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY seq ASC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        try:
            with self.connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise RegistryError(f"An error occurred while listing jobs: {e}") from e
        return [Job.from_row(row) for row in rows]

    def update_progress(self, job_id: str, progress: int, phase_info: PhaseInfo = None) -> bool:
        """
        Moves the job to running (on first call) and raises its progress.

        Progress never decreases. Returns False, leaving the row unchanged, when the
        job is unknown or already terminal.
        """
        progress = max(0, min(100, int(progress)))
        now = _now()
        sets = [
            "status = ?",
            "started_at = COALESCE(started_at, ?)",
            "updated_at = ?",
            "progress = MAX(progress, ?)",
        ]
        params = [JobStatus.RUNNING.value, now, now, progress]
        if phase_info is not None:
            sets += [
                "operation_id = ?",
                "phase = ?",
                "total_items = ?",
                "completed_items = MAX(COALESCE(completed_items, 0), ?)",
                "failed_items = MAX(COALESCE(failed_items, 0), ?)",
            ]
            params += [
                phase_info.operation_id,
                phase_info.phase.value,
                phase_info.total_items,
                phase_info.completed_items,
                phase_info.failed_items,
            ]
        sql = f"UPDATE jobs SET {', '.join(sets)} WHERE id = ? AND status IN (?, ?)"
        params += [job_id, *_ACTIVE]

        try:
            with self.connect() as conn:
                cursor = conn.execute(sql, params)
                applied = cursor.rowcount > 0
        except sqlite3.Error as e:
            raise RegistryError(f"An error occurred while updating job {job_id}: {e}") from e

        if not applied:
            logger.debug("progress_update_rejected", job_id=job_id, progress=progress)
        return applied

    def mark_terminal(
        self,
        job_id: str,
        status: JobStatus,
        error: str = None,
        result: dict = None,
        phase_info: PhaseInfo = None,
        cancel_reason: str = None,
    ) -> bool:
        """
        Writes the job's final state. Idempotent: the first terminal write wins and
        later calls return False without touching the row.
        """
        status = JobStatus(status)
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")

        now = _now()
        sets = [
            "status = ?",
            "completed_at = ?",
            "updated_at = ?",
            "error = ?",
            "result = COALESCE(?, result)",
            "progress = CASE WHEN ? THEN 100 ELSE progress END",
            "cancel_reason = COALESCE(cancel_reason, ?)",
        ]
        params = [
            status.value,
            now,
            now,
            error if status == JobStatus.FAILED else None,
            json.dumps(result) if result is not None else None,
            status == JobStatus.COMPLETED,
            cancel_reason if status == JobStatus.CANCELLED else None,
        ]
        if phase_info is not None:
            sets += ["operation_id = ?", "phase = ?", "total_items = ?", "completed_items = ?", "failed_items = ?"]
            params += [
                phase_info.operation_id,
                phase_info.phase.value,
                phase_info.total_items,
                phase_info.completed_items,
                phase_info.failed_items,
            ]
        sql = f"UPDATE jobs SET {', '.join(sets)} WHERE id = ? AND status IN (?, ?)"
        params += [job_id, *_ACTIVE]

        try:
            with self.connect() as conn:
                applied = conn.execute(sql, params).rowcount > 0
                if applied:
                    conn.execute(
                        "UPDATE metrics SET stat_value = stat_value + 1 WHERE stat_key = ?",
                        [_METRIC_FOR_STATUS[status]],
                    )
        except sqlite3.Error as e:
            raise RegistryError(f"An error occurred while finishing job {job_id}: {e}") from e

        if applied:
            logger.info("job_finished", job_id=job_id, status=status.value, error=error)
        else:
            logger.debug("terminal_write_ignored", job_id=job_id, status=status.value)
        return applied

    def cancel_job(self, job_id: str, reason: str = "user") -> bool:
        """
        Requests cancellation of a job.

        Returns False for unknown or already terminal jobs. A pending job that no
        worker has claimed, or a job whose owning process has exited, is cancelled
        on the spot; otherwise the cancel flag is set and the running controller
        observes it at its next item boundary. Returns True once the signal is
        delivered, not once cancellation has completed.
        """
        now = _now()
        try:
            with self.connect(immediate=True) as conn:
                row = conn.execute("SELECT status, pid FROM jobs WHERE id = ?", [job_id]).fetchone()
                if row is None or JobStatus(row["status"]) in TERMINAL_STATUSES:
                    return False

                with self._tokens_lock:
                    has_token = job_id in self._tokens

                unclaimed = row["status"] == JobStatus.PENDING.value and row["pid"] is None and not has_token
                orphaned = row["pid"] is not None and not has_token and not pid_alive(row["pid"])
                if unclaimed or orphaned:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?, cancel_requested = 1, cancel_reason = COALESCE(cancel_reason, ?),
                            completed_at = ?, updated_at = ?
                        WHERE id = ?
                        """,
                        [JobStatus.CANCELLED.value, reason, now, now, job_id],
                    )
                    conn.execute("UPDATE metrics SET stat_value = stat_value + 1 WHERE stat_key = 'jobs_cancelled'")
                else:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET cancel_requested = 1, cancel_reason = COALESCE(cancel_reason, ?), updated_at = ?
                        WHERE id = ?
                        """,
                        [reason, now, job_id],
                    )
        except sqlite3.Error as e:
            raise RegistryError(f"An error occurred while cancelling job {job_id}: {e}") from e

        with self._tokens_lock:
            token = self._tokens.get(job_id)
        if token is not None:
            token.cancel(reason)

        logger.info("job_cancel_requested", job_id=job_id, reason=reason)
        return True

    def reap_orphans(self, job_ids: Iterable[str] = None) -> List[str]:
        """
        Finishes active jobs whose claiming process no longer exists.

        A job that had a cancel request ends cancelled; any other ends failed.
        Returns the ids of the jobs that were finished here.
        """
        sql = "SELECT id, pid, cancel_requested, cancel_reason FROM jobs WHERE status IN (?, ?) AND pid IS NOT NULL"
        params = list(_ACTIVE)
        if job_ids is not None:
            job_ids = list(job_ids)
            if not job_ids:
                return []
            sql += f" AND id IN ({', '.join('?' for _ in job_ids)})"
            params.extend(job_ids)
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()

        reaped = []
        for row in rows:
            if pid_alive(row["pid"]):
                continue
            if row["cancel_requested"]:
                applied = self.mark_terminal(
                    row["id"], JobStatus.CANCELLED, cancel_reason=row["cancel_reason"] or "user"
                )
            else:
                applied = self.mark_terminal(
                    row["id"],
                    JobStatus.FAILED,
                    error=f"Worker process {row['pid']} exited before the job finished",
                )
            if applied:
                logger.warning("orphaned_job_reaped", job_id=row["id"], pid=row["pid"])
                reaped.append(row["id"])
        return reaped

    def requested_cancel_reason(self, job_id: str) -> Optional[str]:
        """Returns the cancel reason if cancellation was requested for ``job_id``."""
        try:
            with self.connect() as conn:
                row = conn.execute(
                    "SELECT cancel_requested, cancel_reason FROM jobs WHERE id = ?", [job_id]
                ).fetchone()
        except sqlite3.Error as e:
            logger.warning("cancel_poll_failed", job_id=job_id, error=str(e))
            return None
        if row and row["cancel_requested"]:
            return row["cancel_reason"] or "user"
        return None

    # --- in-process cancellation tokens ---

    def new_token(self, job_id: str) -> CancelToken:
        """Creates and registers a token that also observes cross-process cancel requests."""
        token = CancelToken(poll=lambda: self.requested_cancel_reason(job_id))
        with self._tokens_lock:
            self._tokens[job_id] = token
        return token

    def release_token(self, job_id: str) -> None:
        with self._tokens_lock:
            self._tokens.pop(job_id, None)

    # --- worker claims ---

    def claim_job(self, job_id: str, pid: int) -> bool:
        """Marks a pending job as owned by worker ``pid``. Only one claim can succeed."""
        sql = "UPDATE jobs SET pid = ?, updated_at = ? WHERE id = ? AND status = ? AND pid IS NULL"
        try:
            with self.connect() as conn:
                cursor = conn.execute(sql, [pid, _now(), job_id, JobStatus.PENDING.value])
                return cursor.rowcount > 0
        except sqlite3.Error as e:
            raise RegistryError(f"An error occurred while claiming job {job_id}: {e}") from e

    def claim_next(self, pid: int) -> Optional[str]:
        """Claims the oldest unclaimed pending job and returns its id."""
        sql = """
        UPDATE jobs
        SET pid = ?, updated_at = ?
        WHERE seq = (
            SELECT seq FROM jobs
            WHERE status = ? AND pid IS NULL AND cancel_requested = 0
            ORDER BY seq ASC
            LIMIT 1
        )
        RETURNING id;
        """
        try:
            with self.connect(immediate=True) as conn:
                row = conn.execute(sql, [pid, _now(), JobStatus.PENDING.value]).fetchone()
        except sqlite3.Error as e:
            raise RegistryError(f"An error occurred while finding a job: {e}") from e
        return row["id"] if row else None

    # --- reporting and retention ---

    def status_summary(self) -> Dict[str, int]:
        sql = "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
        with self.connect() as conn:
            return {row["status"]: row["count"] for row in conn.execute(sql).fetchall()}

    def get_metrics(self) -> Dict[str, int]:
        with self.connect() as conn:
            rows = conn.execute("SELECT stat_key, stat_value FROM metrics").fetchall()
            return {row["stat_key"]: row["stat_value"] for row in rows}

    def log_path(self, job_id: str) -> str:
        directory = os.path.join(os.path.dirname(os.path.abspath(self.db_path)), "jobs")
        os.makedirs(directory, exist_ok=True)
        return os.path.join(directory, f"{job_id}.log")

    def cleanup_jobs(self, max_age: timedelta) -> int:
        """Deletes terminal jobs that finished before ``now - max_age`` and their logs."""
        cutoff = (datetime.now(timezone.utc) - max_age).isoformat()
        terminal = [s.value for s in TERMINAL_STATUSES]
        with self.connect(immediate=True) as conn:
            rows = conn.execute(
                f"""
                SELECT id FROM jobs
                WHERE status IN ({', '.join('?' for _ in terminal)})
                AND COALESCE(completed_at, created_at) < ?
                """,
                [*terminal, cutoff],
            ).fetchall()
            ids = [row["id"] for row in rows]
            conn.executemany("DELETE FROM jobs WHERE id = ?", [[job_id] for job_id in ids])

        for job_id in ids:
            path = self.log_path(job_id)
            if os.path.exists(path):
                os.remove(path)
        if ids:
            logger.info("jobs_cleaned_up", count=len(ids))
        return len(ids)

    # --- config ---

    def set_config(self, key: str, value: str) -> None:
        with self.connect() as conn:
            conn.execute("INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)", [key, value])

    def get_config(self, key: str, default: str = None) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM config WHERE key = ?", [key]).fetchone()
        if row:
            return row["value"]
        return default if default is not None else CONFIG_DEFAULTS.get(key)

    def get_config_number(self, key: str) -> float:
        return float(self.get_config(key))

    def list_config(self) -> Dict[str, Optional[str]]:
        values = dict(CONFIG_DEFAULTS)
        with self.connect() as conn:
            for row in conn.execute("SELECT key, value FROM config").fetchall():
                values[row["key"]] = row["value"]
        return values
