"""Database models and state machine for transcode jobs.

Job lifecycle:

    QUEUED -> SUBMITTED -> PROCESSING -> COMPLETE
       |                        |
       +-------> FAILED <-------+

QUEUED -> FAILED is only taken when submission never succeeded. Every
status write is checked against ALLOWED_TRANSITIONS.
"""

import uuid
from enum import Enum

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
)

from media_pipeline.core.database import Base, utc_now


class JobStatus(str, Enum):
    """Status of a transcode job."""
    QUEUED = "queued"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        """Position in the lifecycle; terminal states share the last rank."""
        return _RANKS[self]


_RANKS = {
    JobStatus.QUEUED: 0,
    JobStatus.SUBMITTED: 1,
    JobStatus.PROCESSING: 2,
    JobStatus.COMPLETE: 3,
    JobStatus.FAILED: 3,
}

ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.SUBMITTED, JobStatus.PROCESSING)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.SUBMITTED, JobStatus.FAILED}),
    JobStatus.SUBMITTED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETE, JobStatus.FAILED}),
    JobStatus.COMPLETE: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class InvalidTransitionError(Exception):
    """Raised when a status change is not in the transition table."""

    def __init__(self, current: JobStatus, target: JobStatus):
        super().__init__(f"Illegal transcode job transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(current: JobStatus, target: JobStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target)


def transition_path(current: JobStatus, target: JobStatus) -> list[JobStatus]:
    """Legal steps leading from current to target, excluding current.

    An external job can finish between two polls, so a SUBMITTED job that is
    reported finished walks through PROCESSING first.

    Raises:
        InvalidTransitionError: if target cannot be reached
    """
    if current == target:
        return []
    if can_transition(current, target):
        return [target]
    if current is JobStatus.SUBMITTED and target.is_terminal:
        return [JobStatus.PROCESSING, target]
    raise InvalidTransitionError(current, target)


class TranscodeJob(Base):
    """An encoding job for one asset."""
    __tablename__ = "transcode_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    asset_id = Column(Uuid, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True)

    # Quality ids requested from the encoder
    requested_ladder = Column(JSON, nullable=False, default=list)

    # Status tracking
    status = Column(SQLEnum(JobStatus, name="transcode_job_status"), nullable=False, default=JobStatus.QUEUED)
    external_job_id = Column(String(255), nullable=True, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)
    submitted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<TranscodeJob {self.id} - {self.status.value}>"


class TranscodeJobEvent(Base):
    """Append-only log of status transitions."""
    __tablename__ = "transcode_job_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id = Column(Uuid, ForeignKey("transcode_jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    from_status = Column(SQLEnum(JobStatus, name="transcode_job_status"), nullable=True)
    to_status = Column(SQLEnum(JobStatus, name="transcode_job_status"), nullable=False)
    detail = Column(Text, nullable=True)
    occurred_at = Column(DateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        source = self.from_status.value if self.from_status else "-"
        return f"<TranscodeJobEvent {self.job_id} {source} -> {self.to_status.value}>"
