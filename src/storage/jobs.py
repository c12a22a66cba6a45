import json
import time
import uuid
import aiosqlite
import structlog
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from src.config import settings
from src.jobs.status import JobStatus, TERMINAL_STATUSES

logger = structlog.get_logger()


def now_ms() -> int:
    return int(time.time() * 1000)


class JobNotFoundError(LookupError):
    """Raised when a status update targets a job that does not exist."""


@dataclass
class BackgroundJob:
    """Persisted status of a logical job."""
    id: str
    session_id: str
    api_type: str
    task_type: str
    status: str
    created_at: int
    updated_at: int
    raw_input: str = ""
    response: Optional[str] = None
    status_message: Optional[str] = None
    error_message: Optional[str] = None
    include_syntax: bool = False
    temperature: Optional[float] = None
    visible: bool = True
    model_used: Optional[str] = None
    max_output_tokens: Optional[int] = None
    tokens_sent: int = 0
    tokens_received: int = 0
    total_tokens: int = 0
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)


_COLUMNS = (
    "id, session_id, api_type, task_type, status, raw_input, response, "
    "status_message, error_message, include_syntax, temperature, visible, "
    "model_used, max_output_tokens, tokens_sent, tokens_received, total_tokens, "
    "start_time, end_time, created_at, updated_at, metadata"
)


def _row_to_job(row: aiosqlite.Row) -> BackgroundJob:
    data = dict(row)
    metadata = {}
    if data.get("metadata"):
        try:
            metadata = json.loads(data["metadata"])
        except json.JSONDecodeError:
            logger.warning("invalid_job_metadata", job_id=data["id"], source="storage")

    data["metadata"] = metadata
    data["include_syntax"] = bool(data["include_syntax"])
    data["visible"] = bool(data["visible"])
    data["raw_input"] = data["raw_input"] or ""
    return BackgroundJob(**data)


class BackgroundJobRepository:
    """Stores background job status in SQLite.

    This is the durable side of the job system: the in-memory queue only
    holds pending work, while every status change a user can see is
    written here.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize job repository.

        Args:
            db_path: Path to SQLite database file. Uses settings if not provided.
        """
        self.db_path = db_path or settings.sqlite_path
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info("job_repository_initialized", db_path=self.db_path, source="storage")

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS background_jobs (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    api_type TEXT NOT NULL,
                    task_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    raw_input TEXT,
                    response TEXT,
                    status_message TEXT,
                    error_message TEXT,
                    include_syntax INTEGER DEFAULT 0,
                    temperature REAL,
                    visible INTEGER DEFAULT 1,
                    model_used TEXT,
                    max_output_tokens INTEGER,
                    tokens_sent INTEGER DEFAULT 0,
                    tokens_received INTEGER DEFAULT 0,
                    total_tokens INTEGER DEFAULT 0,
                    start_time INTEGER,
                    end_time INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    metadata TEXT
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_background_jobs_session
                ON background_jobs(session_id, created_at DESC)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_background_jobs_status
                ON background_jobs(status)
            """)

            await db.commit()

        logger.info("database_initialized", source="storage")

    async def create(
        self,
        session_id: str,
        api_type: str,
        task_type: str,
        raw_input: str = "",
        include_syntax: bool = False,
        temperature: Optional[float] = None,
        visible: bool = True,
        metadata: Optional[dict] = None,
        status: JobStatus = JobStatus.CREATED,
        model_used: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
    ) -> BackgroundJob:
        """Insert a new background job.

        Args:
            session_id: Session the job belongs to
            api_type: Provider used by the job (e.g., 'gemini')
            task_type: Product-level task (e.g., 'implementation_plan')
            raw_input: Prompt or other input text
            include_syntax: Whether syntax highlighting was requested
            temperature: Sampling temperature
            visible: Whether the job is shown in the UI
            metadata: Initial metadata
            status: Initial status ('created' or 'queued')

        Returns:
            The stored BackgroundJob
        """
        if not session_id or not session_id.strip():
            raise ValueError("Invalid session ID provided for background job creation")

        timestamp = now_ms()
        job = BackgroundJob(
            id=str(uuid.uuid4()),
            session_id=session_id,
            api_type=api_type,
            task_type=task_type,
            status=JobStatus(status).value,
            created_at=timestamp,
            updated_at=timestamp,
            raw_input=raw_input or "",
            include_syntax=include_syntax,
            temperature=temperature,
            visible=visible,
            model_used=model_used,
            max_output_tokens=max_output_tokens,
            metadata=dict(metadata or {}),
        )

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO background_jobs (
                    id, session_id, api_type, task_type, status, raw_input,
                    include_syntax, temperature, visible, model_used,
                    max_output_tokens, created_at, updated_at, metadata
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.session_id,
                    job.api_type,
                    job.task_type,
                    job.status,
                    job.raw_input,
                    int(job.include_syntax),
                    job.temperature,
                    int(job.visible),
                    job.model_used,
                    job.max_output_tokens,
                    job.created_at,
                    job.updated_at,
                    json.dumps(job.metadata),
                ),
            )
            await db.commit()

        logger.info(
            "background_job_created",
            job_id=job.id,
            session_id=session_id,
            api_type=api_type,
            task_type=task_type,
            status=job.status,
            source="storage",
        )

        return job

    async def get(self, job_id: str) -> Optional[BackgroundJob]:
        """Get a background job by ID.

        Returns:
            BackgroundJob or None if it does not exist
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"SELECT {_COLUMNS} FROM background_jobs WHERE id = ?",
                (job_id,),
            ) as cursor:
                row = await cursor.fetchone()
                if row:
                    return _row_to_job(row)

        return None

    async def find_by_session_id(self, session_id: str) -> list[BackgroundJob]:
        """Get every background job of a session, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                f"""
                SELECT {_COLUMNS}
                FROM background_jobs
                WHERE session_id = ?
                ORDER BY created_at DESC
                """,
                (session_id,),
            ) as cursor:
                rows = await cursor.fetchall()

        return [_row_to_job(row) for row in rows]

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        clear_end_time: bool = False,
        response: Optional[str] = None,
        status_message: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[dict] = None,
        tokens_sent: Optional[int] = None,
        tokens_received: Optional[int] = None,
        total_tokens: Optional[int] = None,
        model_used: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
    ) -> None:
        """Update job status and related fields.

        Only fields passed explicitly are written; metadata is merged into
        the stored metadata. updated_at is always stamped.

        Raises:
            ValueError: If job_id is empty or status is unknown
            JobNotFoundError: If the job does not exist
        """
        if not job_id or not job_id.strip():
            raise ValueError("Invalid job ID provided for background job update")
        status = JobStatus(status)

        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [status.value, now_ms()]

        optional_fields = {
            "start_time": start_time,
            "response": response,
            "status_message": status_message,
            "error_message": error_message,
            "tokens_sent": tokens_sent,
            "tokens_received": tokens_received,
            "total_tokens": total_tokens,
            "model_used": model_used,
            "max_output_tokens": max_output_tokens,
        }
        for column, value in optional_fields.items():
            if value is not None:
                assignments.append(f"{column} = ?")
                params.append(value)

        if clear_end_time:
            assignments.append("end_time = NULL")
        elif end_time is not None:
            assignments.append("end_time = ?")
            params.append(end_time)
        elif status in TERMINAL_STATUSES:
            assignments.append("end_time = ?")
            params.append(now_ms())

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT metadata FROM background_jobs WHERE id = ?", (job_id,)
            ) as cursor:
                row = await cursor.fetchone()

            if row is None:
                raise JobNotFoundError(f"Job {job_id} not found for status update")

            if metadata is not None:
                existing = {}
                if row[0]:
                    try:
                        existing = json.loads(row[0])
                    except json.JSONDecodeError:
                        logger.warning("invalid_job_metadata", job_id=job_id, source="storage")
                assignments.append("metadata = ?")
                params.append(json.dumps({**existing, **metadata}))

            params.append(job_id)
            await db.execute(
                f"UPDATE background_jobs SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
            await db.commit()

        logger.info(
            "job_status_updated",
            job_id=job_id,
            status=status.value,
            source="storage",
        )

    async def cleanup_old_jobs(self, retention_days: int) -> int:
        """Remove finished jobs older than the retention period.

        Returns:
            Number of jobs deleted
        """
        cutoff = now_ms() - retention_days * 24 * 60 * 60 * 1000
        terminal = [s.value for s in TERMINAL_STATUSES]
        placeholders = ",".join("?" for _ in terminal)

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                DELETE FROM background_jobs
                WHERE status IN ({placeholders}) AND updated_at < ?
                """,
                (*terminal, cutoff),
            )
            await db.commit()
            deleted_count = cursor.rowcount

        logger.info(
            "old_jobs_cleaned",
            deleted_count=deleted_count,
            retention_days=retention_days,
            source="storage",
        )

        return deleted_count

    async def get_job_stats(self) -> dict:
        """Get job counts grouped by status."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT status, COUNT(*) FROM background_jobs GROUP BY status"
            ) as cursor:
                rows = await cursor.fetchall()

        return {row[0]: row[1] for row in rows}
