import enum
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# Job lifecycle: pending -> running -> completed | failed | cancelled
class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class Phase(str, enum.Enum):
    QUEUED = "queued"
    DOWNLOADING = "downloading"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.COMPLETE, Phase.FAILED, Phase.CANCELLED)


@dataclass
class Job:
    id: str
    command: str
    args: Dict[str, Any]
    status: JobStatus
    progress: int
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    operation_id: Optional[str] = None
    phase: Optional[Phase] = None
    total_items: Optional[int] = None
    completed_items: Optional[int] = None
    failed_items: Optional[int] = None
    cancel_requested: bool = False
    cancel_reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    pid: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        """Builds a Job from a sqlite3.Row of the jobs table."""
        return cls(
            id=row["id"],
            command=row["command"],
            args=json.loads(row["args"]) if row["args"] else {},
            status=JobStatus(row["status"]),
            progress=row["progress"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            error=row["error"],
            operation_id=row["operation_id"],
            phase=Phase(row["phase"]) if row["phase"] else None,
            total_items=row["total_items"],
            completed_items=row["completed_items"],
            failed_items=row["failed_items"],
            cancel_requested=bool(row["cancel_requested"]),
            cancel_reason=row["cancel_reason"],
            result=json.loads(row["result"]) if row["result"] else None,
            pid=row["pid"],
        )

    @property
    def targets(self) -> List[str]:
        return list(self.args.get("targets", []))

    def snapshot(self) -> "JobStatusSnapshot":
        return JobStatusSnapshot(
            id=self.id,
            command=self.command,
            status=self.status,
            progress=self.progress,
            phase=self.phase,
            total_items=self.total_items,
            completed_items=self.completed_items,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            error=self.error,
            cancel_reason=self.cancel_reason,
        )


@dataclass(frozen=True)
class PhaseInfo:
    """Operation fields mirrored into the Job record on each progress update."""
    operation_id: str
    phase: Phase
    total_items: int
    completed_items: int
    failed_items: int = 0


@dataclass
class RetrievalOperation:
    operation_id: str
    job_id: str
    phase: Phase
    total_items: int
    chunk_size: int = 1
    completed_items: int = 0
    failed_items: int = 0
    bytes_transferred: int = 0
    errors: List[str] = field(default_factory=list)
    cancel_reason: Optional[str] = None

    @property
    def progress(self) -> int:
        if self.phase == Phase.COMPLETE:
            return 100
        # 100 is reserved for the completed state
        return min(99, self.completed_items * 100 // self.total_items)

    def phase_info(self) -> PhaseInfo:
        return PhaseInfo(
            operation_id=self.operation_id,
            phase=self.phase,
            total_items=self.total_items,
            completed_items=self.completed_items,
            failed_items=self.failed_items,
        )


@dataclass(frozen=True)
class JobStatusSnapshot:
    id: str
    command: str
    status: JobStatus
    progress: int
    created_at: str
    phase: Optional[Phase] = None
    total_items: Optional[int] = None
    completed_items: Optional[int] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None
    cancel_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "command": self.command,
            "status": self.status.value,
            "progress": self.progress,
            "createdAt": self.created_at,
        }
        optional = {
            "phase": self.phase.value if self.phase else None,
            "totalItems": self.total_items,
            "completedItems": self.completed_items,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "error": self.error,
            "cancelReason": self.cancel_reason,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data
