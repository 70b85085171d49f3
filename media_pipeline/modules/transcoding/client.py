"""Interface to the external transcoding service.

The orchestrator only speaks to the encoder through TranscoderClient, so the
managed service, a self-hosted encoder or a test fake are interchangeable.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TranscoderError(Exception):
    """Base exception for transcoder client errors."""
    pass


class TranscoderTransportError(TranscoderError):
    """Network failure or timeout; the call may be retried."""
    pass


class TranscoderRejectedError(TranscoderError):
    """Definitive rejection by the service; retrying will not help."""
    pass


class ExternalJobState(str, Enum):
    """Job states reported by the external service."""
    IN_PROGRESS = "in-progress"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_finished(self) -> bool:
        return self is not ExternalJobState.IN_PROGRESS


@dataclass(frozen=True)
class JobDescription:
    """What to encode and where the outputs go."""
    input_key: str
    output_prefix: str
    requested_qualities: tuple[str, ...]


@dataclass(frozen=True)
class ProducedOutput:
    quality_id: str
    output_key: str


@dataclass(frozen=True)
class ExternalJobStatus:
    """A status report for one external job."""
    state: ExternalJobState
    outputs: tuple[ProducedOutput, ...] = field(default_factory=tuple)
    error_message: Optional[str] = None


class TranscoderClient(ABC):
    """Submits and tracks jobs on an external encoder."""

    @abstractmethod
    async def submit(self, description: JobDescription) -> str:
        """Submit a job and return the service's handle for it.

        Raises:
            TranscoderTransportError: on network failure
            TranscoderRejectedError: if the service refuses the job
        """
        pass

    @abstractmethod
    async def get_status(self, external_job_id: str) -> ExternalJobStatus:
        """Fetch the current state of a submitted job.

        Raises:
            TranscoderTransportError: on network failure
            TranscoderRejectedError: if the service does not know the job
        """
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None
