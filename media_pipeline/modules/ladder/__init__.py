"""Quality ladder registry."""

from media_pipeline.modules.ladder.registry import (
    QUALITY_LADDER,
    QualityLevel,
    UnknownQualityError,
    all_qualities,
    find_quality,
    get_quality,
    is_registered,
    qualities_for,
    registry_index,
    sort_by_bandwidth_desc,
)

__all__ = [
    "QUALITY_LADDER",
    "QualityLevel",
    "UnknownQualityError",
    "all_qualities",
    "find_quality",
    "get_quality",
    "is_registered",
    "qualities_for",
    "registry_index",
    "sort_by_bandwidth_desc",
]
