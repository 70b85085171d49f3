"""AWS Elemental MediaConvert adapter.

Each requested quality becomes two output groups: HLS written to
``s3://{bucket}/{output_prefix}/{quality_id}/playlist.m3u8`` and a video-only
DASH ISO group whose single-file segments land at
``s3://{bucket}/{output_prefix}/{quality_id}/segments.mp4``. The ladder and
prefix travel with the job as user metadata so a status lookup can report
the produced keys without a second store.
"""

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from media_pipeline.core.config import Settings, settings as default_settings
from media_pipeline.modules.ladder import get_quality
from media_pipeline.modules.transcoding.client import (
    ExternalJobState,
    ExternalJobStatus,
    JobDescription,
    ProducedOutput,
    TranscoderClient,
    TranscoderRejectedError,
    TranscoderTransportError,
)

logger = logging.getLogger(__name__)

# Error codes that mean the request itself is wrong
_REJECTION_CODES = frozenset({
    "BadRequestException",
    "ForbiddenException",
    "NotFoundException",
    "ConflictException",
    "AccessDeniedException",
    "ValidationException",
})

_STATE_MAP = {
    "SUBMITTED": ExternalJobState.IN_PROGRESS,
    "PROGRESSING": ExternalJobState.IN_PROGRESS,
    "COMPLETE": ExternalJobState.SUCCESS,
    "ERROR": ExternalJobState.ERROR,
    "CANCELED": ExternalJobState.CANCELLED,
}

SEGMENT_LENGTH_SECONDS = 10
DASH_FRAGMENT_LENGTH_SECONDS = 2
PLAYLIST_NAME = "playlist"
SEGMENTS_NAME = "segments"


def _video_description(quality) -> dict[str, Any]:
    return {
        "Width": quality.width,
        "Height": quality.height,
        "CodecSettings": {
            "Codec": "H_264",
            "H264Settings": {
                "RateControlMode": "QVBR",
                "MaxBitrate": quality.max_bitrate_kbps * 1000,
            },
        },
    }


def build_output_group(bucket: str, output_prefix: str, quality_id: str) -> dict[str, Any]:
    """MediaConvert HLS output group for a single ladder rung."""
    quality = get_quality(quality_id)
    return {
        "Name": f"HLS {quality.id}",
        "OutputGroupSettings": {
            "Type": "HLS_GROUP_SETTINGS",
            "HlsGroupSettings": {
                "SegmentLength": SEGMENT_LENGTH_SECONDS,
                "MinSegmentLength": 0,
                "Destination": f"s3://{bucket}/{output_prefix}/{quality.id}/{PLAYLIST_NAME}",
            },
        },
        "Outputs": [
            {
                "NameModifier": f"_{quality.id}",
                "ContainerSettings": {"Container": "M3U8"},
                "VideoDescription": _video_description(quality),
                "AudioDescriptions": [
                    {
                        "CodecSettings": {
                            "Codec": "AAC",
                            "AacSettings": {"Bitrate": 128000, "CodingMode": "CODING_MODE_2_0", "SampleRate": 48000},
                        },
                    },
                ],
            },
        ],
    }


def build_dash_output_group(bucket: str, output_prefix: str, quality_id: str) -> dict[str, Any]:
    """MediaConvert DASH ISO output group for a single ladder rung.

    DASH ISO outputs carry one media type each, so the group holds the video
    track only. SINGLE_FILE segment control writes one ``segments.mp4`` next
    to the rung's HLS playlist.
    """
    quality = get_quality(quality_id)
    return {
        "Name": f"DASH {quality.id}",
        "OutputGroupSettings": {
            "Type": "DASH_ISO_GROUP_SETTINGS",
            "DashIsoGroupSettings": {
                "SegmentLength": SEGMENT_LENGTH_SECONDS,
                "FragmentLength": DASH_FRAGMENT_LENGTH_SECONDS,
                "SegmentControl": "SINGLE_FILE",
                "Destination": f"s3://{bucket}/{output_prefix}/{quality.id}/{SEGMENTS_NAME}",
            },
        },
        "Outputs": [
            {
                "ContainerSettings": {"Container": "MPD"},
                "VideoDescription": _video_description(quality),
            },
        ],
    }


def build_job_settings(bucket: str, description: JobDescription) -> dict[str, Any]:
    """Full CreateJob settings for a job description."""
    output_groups = []
    for quality_id in description.requested_qualities:
        output_groups.append(build_output_group(bucket, description.output_prefix, quality_id))
        output_groups.append(build_dash_output_group(bucket, description.output_prefix, quality_id))

    return {
        "Inputs": [
            {
                "FileInput": f"s3://{bucket}/{description.input_key}",
                "AudioSelectors": {"Audio Selector 1": {"DefaultSelection": "DEFAULT"}},
            },
        ],
        "OutputGroups": output_groups,
    }


class MediaConvertTranscoder(TranscoderClient):
    """TranscoderClient backed by MediaConvert.

    boto3 is blocking, so every call runs in a worker thread.
    """

    def __init__(
        self,
        role_arn: str,
        bucket: str,
        *,
        region: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        connect_timeout: float = 3.0,
        read_timeout: float = 10.0,
        client=None,
    ):
        if not role_arn:
            raise ValueError("MEDIACONVERT_ROLE_ARN not configured")
        if not bucket:
            raise ValueError("Transcode output bucket not configured")
        self.role_arn = role_arn
        self.bucket = bucket

        if client is None:
            client_kwargs = {
                "region_name": region,
                "config": BotoConfig(
                    retries={"max_attempts": 1, "mode": "standard"},
                    connect_timeout=connect_timeout,
                    read_timeout=read_timeout,
                ),
            }
            if endpoint_url:
                client_kwargs["endpoint_url"] = endpoint_url
            client = boto3.client("mediaconvert", **client_kwargs)

        self.client = client

    @staticmethod
    def _wrap(exc: Exception, action: str):
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = str(error.get("Code", ""))
            message = f"MediaConvert {action} failed: {code} {error.get('Message', '')}".strip()
            if code in _REJECTION_CODES:
                return TranscoderRejectedError(message)
            return TranscoderTransportError(message)
        return TranscoderTransportError(f"MediaConvert {action} failed: {exc}")

    def _create_job(self, description: JobDescription) -> str:
        try:
            response = self.client.create_job(
                Role=self.role_arn,
                Settings=build_job_settings(self.bucket, description),
                UserMetadata={
                    "output_prefix": description.output_prefix,
                    "qualities": ",".join(description.requested_qualities),
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "create_job") from e

        job_id = response.get("Job", {}).get("Id")
        if not job_id:
            raise TranscoderTransportError("MediaConvert create_job returned no job id")
        return job_id

    def _get_job(self, external_job_id: str) -> ExternalJobStatus:
        try:
            response = self.client.get_job(Id=external_job_id)
        except (BotoCoreError, ClientError) as e:
            raise self._wrap(e, "get_job") from e

        job = response.get("Job", {})
        raw_status = job.get("Status", "")
        state = _STATE_MAP.get(raw_status)
        if state is None:
            logger.warning("Unknown MediaConvert status %s for job %s", raw_status, external_job_id)
            state = ExternalJobState.IN_PROGRESS

        outputs: tuple[ProducedOutput, ...] = ()
        if state is ExternalJobState.SUCCESS:
            metadata = job.get("UserMetadata", {})
            prefix = metadata.get("output_prefix", "")
            qualities = [q for q in metadata.get("qualities", "").split(",") if q]
            outputs = tuple(
                ProducedOutput(q, f"{prefix}/{q}/{PLAYLIST_NAME}.m3u8")
                for q in qualities
            )

        error_message = None
        if state in (ExternalJobState.ERROR, ExternalJobState.CANCELLED):
            error_message = job.get("ErrorMessage") or f"MediaConvert job {raw_status.lower()}"

        return ExternalJobStatus(state=state, outputs=outputs, error_message=error_message)

    async def submit(self, description: JobDescription) -> str:
        job_id = await asyncio.to_thread(self._create_job, description)
        logger.info(
            "Submitted MediaConvert job",
            extra={"external_job_id": job_id, "input_key": description.input_key},
        )
        return job_id

    async def get_status(self, external_job_id: str) -> ExternalJobStatus:
        return await asyncio.to_thread(self._get_job, external_job_id)


def build_transcoder(config: Optional[Settings] = None) -> TranscoderClient:
    """Construct the configured transcoder client."""
    config = config or default_settings
    backend = config.TRANSCODER_BACKEND.lower()
    if backend != "mediaconvert":
        raise ValueError(f"Unknown transcoder backend: {config.TRANSCODER_BACKEND}")

    return MediaConvertTranscoder(
        config.MEDIACONVERT_ROLE_ARN,
        config.TRANSCODE_OUTPUT_BUCKET or config.STORAGE_BUCKET,
        region=config.MEDIACONVERT_REGION,
        endpoint_url=config.MEDIACONVERT_ENDPOINT_URL,
        connect_timeout=config.STORAGE_CONNECT_TIMEOUT_SECONDS,
        read_timeout=config.TRANSCODER_CALL_TIMEOUT_SECONDS,
    )
