"""Plan-tier access policies and device capability presets.

Both tables are static. A policy caps the bitrate a tier may stream and can
optionally narrow the tier to an explicit set of quality ids.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from media_pipeline.modules.ladder import QualityLevel, get_quality

logger = logging.getLogger(__name__)


class PlanTier(str, Enum):
    """Subscription level supplied by the auth layer."""
    FREE = "free"
    STANDARD = "standard"
    PREMIUM = "premium"


@dataclass(frozen=True)
class AccessPolicy:
    """What one plan tier may stream."""
    tier: PlanTier
    max_quality_id: str
    allowed_quality_ids: Optional[frozenset[str]] = None

    @property
    def max_bitrate_kbps(self) -> int:
        return get_quality(self.max_quality_id).bitrate_kbps

    def permits(self, quality: QualityLevel) -> bool:
        if self.allowed_quality_ids is not None and quality.id not in self.allowed_quality_ids:
            return False
        return quality.bitrate_kbps <= self.max_bitrate_kbps


ACCESS_POLICIES: dict[PlanTier, AccessPolicy] = {
    PlanTier.FREE: AccessPolicy(PlanTier.FREE, "sd480"),
    PlanTier.STANDARD: AccessPolicy(PlanTier.STANDARD, "hd720"),
    PlanTier.PREMIUM: AccessPolicy(PlanTier.PREMIUM, "hd4k"),
}


def policy_for(plan_tier: Union[PlanTier, str, None]) -> AccessPolicy:
    """Look up the policy for a tier; unknown tiers get the free policy."""
    value = plan_tier.value if isinstance(plan_tier, PlanTier) else str(plan_tier or "")
    try:
        tier = PlanTier(value.strip().lower())
    except ValueError:
        logger.warning("Unknown plan tier %r, applying free policy", plan_tier)
        tier = PlanTier.FREE
    return ACCESS_POLICIES[tier]


class DeviceClass(str, Enum):
    """Broad client categories with a typical maximum resolution."""
    TV = "tv"
    DESKTOP = "desktop"
    TABLET = "tablet"
    MOBILE = "mobile"


DEVICE_MAX_RESOLUTIONS: dict[DeviceClass, tuple[int, int]] = {
    DeviceClass.TV: (3840, 2160),
    DeviceClass.DESKTOP: (1920, 1080),
    DeviceClass.TABLET: (1920, 1080),
    DeviceClass.MOBILE: (1280, 720),
}


def device_max_resolution(
    device: Union[DeviceClass, str, None] = None,
    max_width: Optional[int] = None,
    max_height: Optional[int] = None,
) -> Optional[tuple[int, int]]:
    """Resolution bound for a request.

    Explicit bounds win over the device preset; a single explicit bound
    leaves the other axis open.

    Raises:
        ValueError: for an unknown device class or non-positive bound
    """
    if max_width is not None or max_height is not None:
        for bound in (max_width, max_height):
            if bound is not None and bound <= 0:
                raise ValueError(f"Resolution bounds must be positive, got {bound}")
        return (max_width or 2**31 - 1, max_height or 2**31 - 1)

    if device is None:
        return None
    return DEVICE_MAX_RESOLUTIONS[DeviceClass(device)]
