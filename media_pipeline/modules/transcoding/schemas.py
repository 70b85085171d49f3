"""Pydantic schemas for transcode jobs."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from media_pipeline.modules.transcoding.client import ExternalJobState, ExternalJobStatus, ProducedOutput
from media_pipeline.modules.transcoding.models import JobStatus


class TranscodeSubmitRequest(BaseModel):
    """Schema for starting a transcode; omit ladder for the default."""
    ladder: Optional[list[str]] = Field(default=None, description="Quality ids to produce")


class TranscodeJobEventResponse(BaseModel):
    from_status: Optional[JobStatus] = None
    to_status: JobStatus
    detail: Optional[str] = None
    occurred_at: datetime

    class Config:
        from_attributes = True


class TranscodeJobResponse(BaseModel):
    """Schema for transcode job response."""
    id: UUID
    asset_id: UUID
    requested_ladder: list[str]
    status: JobStatus
    external_job_id: Optional[str] = None
    attempts: int
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TranscodeJobDetailResponse(TranscodeJobResponse):
    """Job with its transition history."""
    events: list[TranscodeJobEventResponse] = Field(default_factory=list)


class NotificationOutput(BaseModel):
    quality_id: str
    output_key: str


class TranscodeNotification(BaseModel):
    """Status pushed by the transcoding service."""
    external_job_id: str = Field(..., min_length=1)
    state: ExternalJobState
    outputs: list[NotificationOutput] = Field(default_factory=list)
    error_message: Optional[str] = None

    def to_status(self) -> ExternalJobStatus:
        return ExternalJobStatus(
            state=self.state,
            outputs=tuple(ProducedOutput(o.quality_id, o.output_key) for o in self.outputs),
            error_message=self.error_message,
        )


class PollSummaryResponse(BaseModel):
    """Counts from a polling sweep."""
    polled: int
    by_status: dict[str, int]
    expired: list[UUID] = Field(default_factory=list)
