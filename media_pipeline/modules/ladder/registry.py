"""Quality ladder registry.

Static catalog of the renditions the pipeline knows how to encode and
deliver. Entries are immutable and registered once at import; every other
module looks qualities up here instead of carrying its own copy.
"""

from dataclasses import dataclass
from typing import Iterable, Optional


@dataclass(frozen=True)
class QualityLevel:
    """A single rung of the ladder."""
    id: str
    label: str
    bitrate_kbps: int
    width: int
    height: int
    bandwidth_bps: int
    max_bitrate_kbps: int

    @property
    def resolution(self) -> tuple[int, int]:
        return (self.width, self.height)

    @property
    def resolution_label(self) -> str:
        return f"{self.width}x{self.height}"

    def fits_within(self, max_width: int, max_height: int) -> bool:
        """Whether this quality's frame fits inside the given bounds."""
        return self.width <= max_width and self.height <= max_height


# Ordered from highest to lowest; the position is the tie-breaker when two
# qualities share a bandwidth.
QUALITY_LADDER: tuple[QualityLevel, ...] = (
    QualityLevel("hd4k", "4K (2160p)", 20000, 3840, 2160, 20000000, 25000),
    QualityLevel("hd1080", "1080p", 8000, 1920, 1080, 8000000, 10000),
    QualityLevel("hd720", "720p", 4000, 1280, 720, 4000000, 5000),
    QualityLevel("sd480", "480p", 2000, 854, 480, 2000000, 3000),
    QualityLevel("sd360", "360p", 1000, 640, 360, 1000000, 1500),
    QualityLevel("sd240", "240p", 500, 426, 240, 500000, 750),
)

_BY_ID: dict[str, QualityLevel] = {q.id: q for q in QUALITY_LADDER}
_ORDER: dict[str, int] = {q.id: index for index, q in enumerate(QUALITY_LADDER)}


class UnknownQualityError(KeyError):
    """Raised when a quality id is not in the registry."""


def get_quality(quality_id: str) -> QualityLevel:
    try:
        return _BY_ID[quality_id]
    except KeyError:
        raise UnknownQualityError(quality_id) from None


def find_quality(quality_id: str) -> Optional[QualityLevel]:
    return _BY_ID.get(quality_id)


def is_registered(quality_id: str) -> bool:
    return quality_id in _BY_ID


def all_qualities() -> tuple[QualityLevel, ...]:
    return QUALITY_LADDER


def registry_index(quality_id: str) -> int:
    """Position of a quality in the registry ordering."""
    return _ORDER[get_quality(quality_id).id]


def qualities_for(ids: Iterable[str]) -> list[QualityLevel]:
    """Resolve ids to levels, in registry order, ignoring duplicates.

    Raises:
        UnknownQualityError: if any id is not registered
    """
    wanted = {get_quality(quality_id).id for quality_id in ids}
    return [q for q in QUALITY_LADDER if q.id in wanted]


def sort_by_bandwidth_desc(qualities: Iterable[QualityLevel]) -> list[QualityLevel]:
    """Descending bandwidth, ties broken by registry position."""
    return sorted(qualities, key=lambda q: (-q.bandwidth_bps, _ORDER.get(q.id, len(_ORDER))))
