"""Delivery resolution.

Turns an asset, a plan tier and a device bound into a StreamingDescriptor.
Resolution only reads: it never changes asset, rendition or job state, so it
is safe to call concurrently and repeatedly.
"""

import logging
import uuid
from typing import Iterable, Optional, Union
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.core.config import settings
from media_pipeline.core.metrics import DELIVERY_RESOLUTIONS_TOTAL
from media_pipeline.modules.delivery.policy import (
    AccessPolicy,
    DeviceClass,
    PlanTier,
    device_max_resolution,
    policy_for,
)
from media_pipeline.modules.delivery.schemas import (
    DescriptorQuality,
    DescriptorSubtitle,
    StreamingDescriptor,
)
from media_pipeline.modules.ladder import QualityLevel, all_qualities, sort_by_bandwidth_desc
from media_pipeline.modules.manifest import (
    ManifestEntry,
    ManifestFormat,
    asset_base_key,
    generate_manifest,
    rendition_base_url,
)
from media_pipeline.modules.media.keys import SignedUrl, StorageKeyManager
from media_pipeline.modules.media.repository import AssetRepository, RenditionRepository
from media_pipeline.modules.media.service import AssetNotFoundError

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Base exception for delivery errors."""
    pass


class NoPlayableRendition(DeliveryError):
    """Raised when nothing the viewer may play is ready.

    ``reason`` tells "still processing" apart from "not on your plan".
    """

    NOT_READY = "not_ready"
    NOT_ENTITLED = "not_entitled"
    DEVICE_UNSUPPORTED = "device_unsupported"

    _MESSAGES = {
        NOT_READY: "No renditions are ready yet",
        NOT_ENTITLED: "Not available on your plan",
        DEVICE_UNSUPPORTED: "No permitted rendition fits this device",
    }

    def __init__(self, reason: str):
        super().__init__(self._MESSAGES.get(reason, reason))
        self.reason = reason


def select_qualities(
    policy: AccessPolicy,
    ready_quality_ids: Iterable[str],
    max_resolution: Optional[tuple[int, int]] = None,
) -> list[QualityLevel]:
    """Permitted qualities in descending bandwidth.

    permitted = policy ∩ ready ∩ device bound. Ready ids that are not in the
    registry are ignored.

    Raises:
        NoPlayableRendition: with the first filter that emptied the set
    """
    ready_ids = set(ready_quality_ids)
    ready = [q for q in all_qualities() if q.id in ready_ids]
    if not ready:
        raise NoPlayableRendition(NoPlayableRendition.NOT_READY)

    entitled = [q for q in ready if policy.permits(q)]
    if not entitled:
        raise NoPlayableRendition(NoPlayableRendition.NOT_ENTITLED)

    if max_resolution is not None:
        entitled = [q for q in entitled if q.fits_within(*max_resolution)]
        if not entitled:
            raise NoPlayableRendition(NoPlayableRendition.DEVICE_UNSUPPORTED)

    return sort_by_bandwidth_desc(entitled)


def variant_key(base_key: str, quality_id: str, manifest_format: ManifestFormat) -> str:
    """Storage key of the file a manifest entry points at."""
    file_name = "playlist.m3u8" if manifest_format is ManifestFormat.HLS else "segments.mp4"
    return f"{base_key}/{quality_id}/{file_name}"


MANIFEST_ROUTES = {
    ManifestFormat.HLS: "master.m3u8",
    ManifestFormat.DASH: "manifest.mpd",
}


def manifest_endpoint_url(
    manifest_base_url: str,
    asset_id: uuid.UUID,
    manifest_format: ManifestFormat,
    device: Union[DeviceClass, str, None] = None,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None,
) -> str:
    """URL of the entitlement-filtered manifest route for the same request.

    The manifest differs per plan and device, so it is served by the API
    rather than stored.
    """
    url = f"{manifest_base_url.rstrip('/')}/{asset_id}/{MANIFEST_ROUTES[manifest_format]}"
    params = {}
    if device is not None:
        params["device"] = getattr(device, "value", device)
    if max_width is not None:
        params["max_width"] = max_width
    if max_height is not None:
        params["max_height"] = max_height
    return f"{url}?{urlencode(params)}" if params else url


class DeliveryResolver:
    """Composes playback descriptors from ready renditions.

    Args:
        session: Database session used for reads only
        keys: Issues the CDN base and signed URLs
        ttl_seconds: Lifetime of issued URLs, clamped to the key manager's maximum
        manifest_base_url: Prefix of the stream routes that serve manifests
    """

    def __init__(
        self,
        session: AsyncSession,
        keys: StorageKeyManager,
        ttl_seconds: Optional[int] = None,
        manifest_base_url: Optional[str] = None,
    ):
        self.asset_repo = AssetRepository(session)
        self.rendition_repo = RenditionRepository(session)
        self.keys = keys
        self.ttl_seconds = min(ttl_seconds or keys.max_ttl_seconds, keys.max_ttl_seconds)
        self.manifest_base_url = manifest_base_url or f"{settings.API_V1_PREFIX}/stream"

    async def resolve(
        self,
        asset_id: uuid.UUID,
        plan_tier: Union[PlanTier, str, None],
        manifest_format: Union[ManifestFormat, str] = ManifestFormat.HLS,
        *,
        device: Union[DeviceClass, str, None] = None,
        max_width: Optional[int] = None,
        max_height: Optional[int] = None,
    ) -> StreamingDescriptor:
        """Build a descriptor for one playback request.

        Raises:
            ValueError: for an unknown format or device class
            AssetNotFoundError: if the asset does not exist
            NoPlayableRendition: if no permitted quality is ready
            SigningError: if a URL could not be signed
        """
        manifest_format = ManifestFormat(manifest_format)
        max_resolution = device_max_resolution(device, max_width, max_height)

        asset = await self.asset_repo.get_by_id(asset_id)
        if asset is None:
            raise AssetNotFoundError(f"Asset {asset_id} not found")

        ready = await self.rendition_repo.get_ready_for_asset(asset.id)
        policy = policy_for(plan_tier)
        try:
            qualities = select_qualities(policy, [r.quality_id for r in ready], max_resolution)
        except NoPlayableRendition as e:
            DELIVERY_RESOLUTIONS_TOTAL.labels(format=manifest_format.value, outcome=e.reason).inc()
            logger.info(
                "No playable rendition",
                extra={"asset_id": str(asset_id), "plan_tier": policy.tier.value, "reason": e.reason},
            )
            raise

        base_key = asset_base_key(asset.source_key)
        cdn_base = self.keys.base_url()
        duration = asset.duration_seconds or 0

        issued: list[SignedUrl] = []

        def sign(key: str) -> str:
            signed = self.keys.signed_url(key, self.ttl_seconds)
            issued.append(signed)
            return signed.url

        variant_urls = {q.id: sign(variant_key(base_key, q.id, manifest_format)) for q in qualities}
        # The manifest lists the same signed variant URLs the descriptor carries
        entries = [
            ManifestEntry(q, rendition_base_url(cdn_base, base_key, q.id), url=variant_urls[q.id])
            for q in qualities
        ]
        body = generate_manifest(entries, manifest_format, duration)
        manifest_url = manifest_endpoint_url(
            self.manifest_base_url, asset.id, manifest_format, device, max_width, max_height
        )

        descriptor_qualities = [
            DescriptorQuality(
                id=q.id,
                label=q.label,
                bitrate_kbps=q.bitrate_kbps,
                bandwidth_bps=q.bandwidth_bps,
                width=q.width,
                height=q.height,
                url=variant_urls[q.id],
            )
            for q in qualities
        ]
        subtitles = [
            DescriptorSubtitle(language=track.language, label=track.label, url=sign(track.storage_key))
            for track in sorted(asset.subtitles, key=lambda t: t.language)
        ]
        poster_url = sign(asset.poster_key) if asset.poster_key else None

        DELIVERY_RESOLUTIONS_TOTAL.labels(format=manifest_format.value, outcome="success").inc()
        logger.debug(
            "Resolved stream",
            extra={"asset_id": str(asset_id), "plan_tier": policy.tier.value, "qualities": [q.id for q in qualities]},
        )

        return StreamingDescriptor(
            asset_id=asset.id,
            format=manifest_format,
            manifest_url=manifest_url,
            cdn_base_url=f"{cdn_base}/{base_key}",
            qualities=descriptor_qualities,
            subtitles=subtitles,
            poster_url=poster_url,
            duration_seconds=duration,
            expires_at=min(s.expires_at for s in issued),
            manifest=body,
        )
