"""Playback API router.

The plan tier comes from the ``X-Plan-Tier`` header set by the upstream
auth layer; this service does not authenticate viewers.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from media_pipeline.core.config import settings
from media_pipeline.core.database import get_db
from media_pipeline.core.dependencies import get_delivery_ttl, get_key_manager
from media_pipeline.modules.delivery.policy import DeviceClass
from media_pipeline.modules.delivery.schemas import StreamingDescriptor
from media_pipeline.modules.delivery.service import DeliveryResolver, NoPlayableRendition
from media_pipeline.modules.manifest import ManifestFormat
from media_pipeline.modules.media.keys import SigningError, StorageKeyManager, StorageUnavailable
from media_pipeline.modules.media.service import AssetNotFoundError

router = APIRouter(prefix="/stream", tags=["stream"])

_REASON_STATUS = {
    NoPlayableRendition.NOT_ENTITLED: status.HTTP_403_FORBIDDEN,
    NoPlayableRendition.NOT_READY: status.HTTP_409_CONFLICT,
    NoPlayableRendition.DEVICE_UNSUPPORTED: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def get_resolver(
    request: Request,
    db: AsyncSession = Depends(get_db),
    keys: StorageKeyManager = Depends(get_key_manager),
    ttl_seconds: int = Depends(get_delivery_ttl),
) -> DeliveryResolver:
    """Dependency to get DeliveryResolver instance."""
    manifest_base_url = f"{str(request.base_url).rstrip('/')}{settings.API_V1_PREFIX}/stream"
    return DeliveryResolver(db, keys, ttl_seconds, manifest_base_url=manifest_base_url)


async def _resolve(
    resolver: DeliveryResolver,
    asset_id: uuid.UUID,
    plan_tier: Optional[str],
    manifest_format: ManifestFormat,
    device: Optional[DeviceClass],
    max_width: Optional[int],
    max_height: Optional[int],
) -> StreamingDescriptor:
    try:
        return await resolver.resolve(
            asset_id,
            plan_tier,
            manifest_format,
            device=device,
            max_width=max_width,
            max_height=max_height,
        )
    except AssetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except NoPlayableRendition as e:
        raise HTTPException(
            status_code=_REASON_STATUS.get(e.reason, status.HTTP_409_CONFLICT),
            detail={"reason": e.reason, "message": str(e)},
        )
    except StorageUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except SigningError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@router.get("/{asset_id}", response_model=StreamingDescriptor)
async def get_stream(
    asset_id: uuid.UUID,
    manifest_format: ManifestFormat = Query(ManifestFormat.HLS, alias="format"),
    device: Optional[DeviceClass] = Query(None),
    max_width: Optional[int] = Query(None, gt=0),
    max_height: Optional[int] = Query(None, gt=0),
    x_plan_tier: Optional[str] = Header(None),
    resolver: DeliveryResolver = Depends(get_resolver),
):
    """Resolve a playback descriptor for the caller's plan and device."""
    return await _resolve(resolver, asset_id, x_plan_tier, manifest_format, device, max_width, max_height)


@router.get("/{asset_id}/master.m3u8")
async def get_hls_master(
    asset_id: uuid.UUID,
    device: Optional[DeviceClass] = Query(None),
    max_width: Optional[int] = Query(None, gt=0),
    max_height: Optional[int] = Query(None, gt=0),
    x_plan_tier: Optional[str] = Header(None),
    resolver: DeliveryResolver = Depends(get_resolver),
):
    """HLS master playlist filtered to the caller's entitlement."""
    descriptor = await _resolve(resolver, asset_id, x_plan_tier, ManifestFormat.HLS, device, max_width, max_height)
    return Response(content=descriptor.manifest, media_type=ManifestFormat.HLS.content_type)


@router.get("/{asset_id}/manifest.mpd")
async def get_dash_manifest(
    asset_id: uuid.UUID,
    device: Optional[DeviceClass] = Query(None),
    max_width: Optional[int] = Query(None, gt=0),
    max_height: Optional[int] = Query(None, gt=0),
    x_plan_tier: Optional[str] = Header(None),
    resolver: DeliveryResolver = Depends(get_resolver),
):
    """DASH MPD filtered to the caller's entitlement."""
    descriptor = await _resolve(resolver, asset_id, x_plan_tier, ManifestFormat.DASH, device, max_width, max_height)
    return Response(content=descriptor.manifest, media_type=ManifestFormat.DASH.content_type)
