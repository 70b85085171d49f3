"""HLS/DASH manifest generation."""

from media_pipeline.modules.manifest.generator import (
    ManifestEntry,
    ManifestFormat,
    ManifestGenerationError,
    asset_base_key,
    build_entries,
    generate_dash_mpd,
    generate_hls_master,
    generate_manifest,
    rendition_base_url,
)

__all__ = [
    "ManifestEntry",
    "ManifestFormat",
    "ManifestGenerationError",
    "asset_base_key",
    "build_entries",
    "generate_dash_mpd",
    "generate_hls_master",
    "generate_manifest",
    "rendition_base_url",
]
