"""HLS master playlist and DASH MPD generation.

Pure functions: no I/O, no clock. Identical input always yields identical
bytes, and entries are emitted in exactly the order given. Any malformed
entry aborts the whole document with ``ManifestGenerationError``; a partial
manifest is never returned.
"""

import re
from dataclasses import dataclass
from enum import Enum
from numbers import Real
from typing import Iterable, Optional, Sequence
from xml.sax.saxutils import escape

from media_pipeline.modules.ladder.registry import QualityLevel

HLS_VERSION = 3
HLS_TARGET_DURATION = 10
DASH_NAMESPACE = "urn:mpeg:dash:schema:mpd:2011"
DASH_PROFILE = "urn:mpeg:dash:profile:isoff-on-demand:2011"
DASH_MIN_BUFFER_TIME = "PT2S"

_EXTENSION_RE = re.compile(r"\.[^/.]+$")


class ManifestFormat(str, Enum):
    """Supported manifest protocols."""
    HLS = "hls"
    DASH = "dash"

    @property
    def file_name(self) -> str:
        return "playlist.m3u8" if self is ManifestFormat.HLS else "manifest.mpd"

    @property
    def content_type(self) -> str:
        return "application/vnd.apple.mpegurl" if self is ManifestFormat.HLS else "application/dash+xml"


class ManifestGenerationError(ValueError):
    """Raised for malformed ladder input. Never retried."""


@dataclass(frozen=True)
class ManifestEntry:
    """One quality and the base URL its rendition files live under.

    ``url`` is the exact address of the variant file (typically signed). When
    set it replaces ``base_url`` plus the protocol's file name.
    """
    quality: QualityLevel
    base_url: str
    url: Optional[str] = None

    @property
    def playlist_url(self) -> str:
        return self.url or f"{self.base_url}/playlist.m3u8"

    @property
    def segments_url(self) -> str:
        return self.url or f"{self.base_url}/segments.mp4"


def asset_base_key(storage_key: str) -> str:
    """Strip the file extension from an asset's canonical storage key.

    ``videos/1700000000000-ab12cd34-movie.mp4`` -> ``videos/1700000000000-ab12cd34-movie``
    """
    key = (storage_key or "").strip().strip("/")
    base = _EXTENSION_RE.sub("", key)
    if not base or base.endswith("/"):
        raise ManifestGenerationError(f"Cannot derive base key from storage key {storage_key!r}")
    return base


def rendition_base_url(cdn_base: str, base_key: str, quality_id: str) -> str:
    """``<cdnBase>/<assetBaseKey>/<qualityId>``"""
    return f"{cdn_base.rstrip('/')}/{base_key.strip('/')}/{quality_id}"


def build_entries(cdn_base: str, storage_key: str, qualities: Iterable[QualityLevel]) -> list[ManifestEntry]:
    """Pair each quality with its rendition base URL, preserving order."""
    base_key = asset_base_key(storage_key)
    return [ManifestEntry(q, rendition_base_url(cdn_base, base_key, q.id)) for q in qualities]


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _is_url(value) -> bool:
    return isinstance(value, str) and bool(value) and not any(c.isspace() for c in value)


def _validate(entries: Sequence[ManifestEntry]) -> None:
    if not entries:
        raise ManifestGenerationError("Manifest requires at least one quality")

    seen: set[str] = set()
    for entry in entries:
        quality = getattr(entry, "quality", None)
        if not isinstance(quality, QualityLevel):
            raise ManifestGenerationError(f"Entry {entry!r} does not carry a QualityLevel")
        if not quality.id or not re.fullmatch(r"[A-Za-z0-9_\-]+", quality.id):
            raise ManifestGenerationError(f"Invalid quality id {quality.id!r}")
        if quality.id in seen:
            raise ManifestGenerationError(f"Duplicate quality {quality.id!r} in ladder")
        seen.add(quality.id)

        for field_name in ("bandwidth_bps", "width", "height"):
            if not _is_positive_int(getattr(quality, field_name)):
                raise ManifestGenerationError(
                    f"Quality {quality.id!r} has invalid {field_name}: {getattr(quality, field_name)!r}"
                )

        if not _is_url(entry.base_url):
            raise ManifestGenerationError(f"Quality {quality.id!r} has invalid base URL {entry.base_url!r}")
        if entry.url is not None and not _is_url(entry.url):
            raise ManifestGenerationError(f"Quality {quality.id!r} has invalid URL {entry.url!r}")


def _format_duration(duration_seconds: Real) -> str:
    if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, Real) or duration_seconds < 0:
        raise ManifestGenerationError(f"Invalid duration {duration_seconds!r}")
    if float(duration_seconds).is_integer():
        return f"PT{int(duration_seconds)}S"
    return f"PT{float(duration_seconds):.3f}".rstrip("0").rstrip(".") + "S"


def generate_hls_master(entries: Sequence[ManifestEntry]) -> str:
    """Build an HLS master playlist, one variant per entry."""
    _validate(entries)

    lines = [
        "#EXTM3U",
        f"#EXT-X-VERSION:{HLS_VERSION}",
        f"#EXT-X-TARGETDURATION:{HLS_TARGET_DURATION}",
    ]
    for entry in entries:
        q = entry.quality
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={q.bandwidth_bps},RESOLUTION={q.width}x{q.height}")
        lines.append(entry.playlist_url)

    return "\n".join(lines) + "\n"


def generate_dash_mpd(entries: Sequence[ManifestEntry], duration_seconds: Real = 0) -> str:
    """Build a static single-period MPD, one Representation per entry."""
    _validate(entries)
    duration = _format_duration(duration_seconds)

    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<MPD xmlns="{DASH_NAMESPACE}" profiles="{DASH_PROFILE}" type="static" '
        f'minBufferTime="{DASH_MIN_BUFFER_TIME}" mediaPresentationDuration="{duration}">',
        '  <Period id="0" start="PT0S">',
        '    <AdaptationSet contentType="video" mimeType="video/mp4" segmentAlignment="true">',
    ]
    for entry in entries:
        q = entry.quality
        lines.append(
            f'      <Representation id="{q.id}" bandwidth="{q.bandwidth_bps}" '
            f'width="{q.width}" height="{q.height}">'
        )
        lines.append(f"        <BaseURL>{escape(entry.segments_url)}</BaseURL>")
        lines.append("      </Representation>")
    lines.extend([
        "    </AdaptationSet>",
        "  </Period>",
        "</MPD>",
    ])

    return "\n".join(lines) + "\n"


def generate_manifest(
    entries: Sequence[ManifestEntry],
    manifest_format: ManifestFormat,
    duration_seconds: Real = 0,
) -> str:
    """Dispatch on format."""
    try:
        manifest_format = ManifestFormat(manifest_format)
    except ValueError:
        raise ManifestGenerationError(f"Unsupported manifest format {manifest_format!r}") from None

    if manifest_format is ManifestFormat.HLS:
        return generate_hls_master(entries)
    return generate_dash_mpd(entries, duration_seconds)
