"""Job record data model for resumable pipeline jobs."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_halted(self) -> bool:
        """True when no new unit of work may start."""
        return self in (
            JobStatus.PAUSED,
            JobStatus.CANCELED,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
        )


class JobType(str, Enum):
    CLASSIFY_IDENTITIES = "CLASSIFY_IDENTITIES"
    ORGANIZE_ITEMS = "ORGANIZE_ITEMS"
    REPOSE_BATCH = "REPOSE_BATCH"
    SCRAPE_SOURCE = "SCRAPE_SOURCE"


class JobRecord(BaseModel):
    """Durable state of one pipeline execution, including its resumption context."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: JobType
    title: str = ""
    status: JobStatus = JobStatus.PENDING
    progress_total: int = 0
    progress_done: int = 0
    progress_failed: int = 0
    progress_message: str = ""
    context: Dict[str, Any] = Field(default_factory=dict)
    supports_pause: bool = True
    supports_retry: bool = True
    supports_restart: bool = True
    source_job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobRecord":
        return cls.model_validate(row)


class JobEventLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class JobEvent(BaseModel):
    """Operator-facing log line attached to a job."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    level: JobEventLevel = JobEventLevel.INFO
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
