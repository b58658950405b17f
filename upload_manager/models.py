"""Data model shared by the upload engine.

This module defines the records that flow between the tracker, the retry and
recovery logic, the transports and the presentation layer:

- `UploadFile`: a file offered for upload by the caller.
- `UploadJob`: the tracked state of one file transfer.
- `ClassifiedError`: a normalized transfer failure with a recovery recommendation.
- `JobResult`: the per-job outcome reported when a session completes.
- `RejectedFile`: a batch entry refused before any job was created.
- `ActionResult`: the boolean-with-reason returned at the facade boundary.
"""
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(Enum):
    """Lifecycle states of an `UploadJob`."""
    QUEUED = "queued"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.UPLOADING)


class DestinationDirective(Enum):
    """Conflict-resolution instruction handed to the transport."""
    NORMAL = "normal"
    OVERWRITE = "overwrite"
    RENAME = "rename"


class ErrorKind(Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    NAME_CONFLICT = "name_conflict"


class ErrorReason(Enum):
    """Fine grained reason behind a `ClassifiedError`."""
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    SERVER_ERROR = "server_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    FILE_TOO_LARGE = "file_too_large"
    UNSUPPORTED_TYPE = "unsupported_type"
    PERMISSION_DENIED = "permission_denied"
    INVALID_REQUEST = "invalid_request"
    DUPLICATE_FILE = "duplicate_file"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class RecoveryActionType(Enum):
    RETRY = "retry"
    PROMPT = "prompt"
    NONE = "none"


@dataclass(frozen=True)
class PromptOption:
    label: str
    value: str
    description: str = ""


@dataclass(frozen=True)
class RecoveryAction:
    """The next step offered to the user for a failed job."""
    type: RecoveryActionType
    options: List[PromptOption] = field(default_factory=list)
    message: str = ""

    @property
    def values(self) -> List[str]:
        return [option.value for option in self.options]


NO_RECOVERY = RecoveryAction(RecoveryActionType.NONE)
RETRY_RECOVERY = RecoveryAction(RecoveryActionType.RETRY)
NAME_CONFLICT_RECOVERY = RecoveryAction(
    RecoveryActionType.PROMPT,
    options=[
        PromptOption("Overwrite", "overwrite", "Replace the existing file with this upload."),
        PromptOption("Rename", "rename", "Keep both files; the store assigns a new name."),
        PromptOption("Skip", "skip", "Do not upload this file."),
    ],
    message="A file with this name already exists. What would you like to do?",
)


@dataclass(frozen=True)
class ClassifiedError:
    """A transfer failure sorted into the retry/recovery taxonomy.

    Attributes:
        kind: TRANSIENT, PERMANENT or NAME_CONFLICT.
        reason: The finer grained cause used for messages and reports.
        title: Short user-facing heading.
        message: User-facing description of what went wrong.
        suggestion: What the user can do about it.
        recovery_action: The recovery recommended for this failure.
        status_code: HTTP-like status reported by the transport, if any.
        detail: The raw failure text.
        retries_exhausted: Set once automatic retries have been used up.
    """
    kind: ErrorKind
    reason: ErrorReason
    title: str
    message: str
    suggestion: str
    recovery_action: RecoveryAction
    status_code: Optional[int] = None
    detail: str = ""
    retries_exhausted: bool = False

    @property
    def effective_kind(self) -> ErrorKind:
        """The kind as it should be surfaced; exhausted errors read as permanent."""
        if self.retries_exhausted:
            return ErrorKind.PERMANENT
        return self.kind

    @property
    def display_message(self) -> str:
        text = f"{self.title}: {self.message}"
        if self.suggestion:
            text += f"\n{self.suggestion}"
        return text

    def to_log_dict(self, job: Optional["UploadJob"] = None) -> Dict[str, Any]:
        """Returns a structured record of this error for logging."""
        record: Dict[str, Any] = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
            "kind": self.kind.value,
            "reason": self.reason.value,
            "title": self.title,
            "message": self.message,
            "detail": self.detail,
            "status_code": self.status_code,
            "retries_exhausted": self.retries_exhausted,
        }
        if job is not None:
            record.update({
                "job_id": job.id,
                "file_name": job.file_name,
                "file_size": job.file_size_bytes,
                "attempts": job.attempts,
            })
        return record


@dataclass(frozen=True)
class UploadFile:
    """A file offered for upload."""
    name: str
    size_bytes: int
    source: Optional[str] = None

    @classmethod
    def from_path(cls, path: str) -> "UploadFile":
        return cls(name=os.path.basename(path), size_bytes=os.path.getsize(path), source=path)


@dataclass
class UploadJob:
    """The tracked state of one file transfer.

    Instances handed out by the tracker are snapshots; mutating them has no
    effect on the tracked state.
    """
    id: str
    file_name: str
    file_size_bytes: int
    destination: str
    source: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    bytes_loaded: int = 0
    started_at: Optional[float] = None
    throughput_bytes_per_sec: float = 0.0
    eta_seconds: Optional[float] = None
    attempts: int = 0
    last_error: Optional[ClassifiedError] = None
    directive: DestinationDirective = DestinationDirective.NORMAL
    stored_name: Optional[str] = None

    @property
    def percent(self) -> float:
        if self.file_size_bytes == 0:
            return 100.0 if self.status == JobStatus.SUCCESS else 0.0
        return self.bytes_loaded / self.file_size_bytes * 100

    @property
    def remaining_bytes(self) -> int:
        return self.file_size_bytes - self.bytes_loaded

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.SUCCESS, JobStatus.CANCELLED)


@dataclass(frozen=True)
class JobResult:
    """Outcome of one job, reported in `session-complete`."""
    job_id: str
    file_name: str
    status: JobStatus
    attempts: int = 0
    stored_name: Optional[str] = None
    error: Optional[ClassifiedError] = None

    @property
    def success(self) -> bool:
        return self.status == JobStatus.SUCCESS

    @classmethod
    def from_job(cls, job: UploadJob) -> "JobResult":
        return cls(
            job_id=job.id,
            file_name=job.file_name,
            status=job.status,
            attempts=job.attempts,
            stored_name=job.stored_name,
            error=job.last_error,
        )


@dataclass(frozen=True)
class RejectedFile:
    """A batch entry that was refused before a job was created for it."""
    file_name: str
    reason: str


@dataclass(frozen=True)
class ActionResult:
    """Result of a caller decision at the facade boundary."""
    ok: bool
    reason: str = ""
    count: int = 0

    def __bool__(self) -> bool:
        return self.ok
