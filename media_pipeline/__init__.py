"""Adaptive media delivery pipeline.

Ingests uploaded video, drives an external encoder to produce a quality
ladder, and serves HLS/DASH manifests gated by plan tier and device.

Modules:
    - core: Configuration, database, storage, logging, metrics, Celery setup
    - modules.ladder: Quality ladder registry
    - modules.media: Assets, renditions, storage keys and signed URLs
    - modules.transcoding: Transcode job orchestration
    - modules.manifest: HLS master playlist and DASH MPD generation
    - modules.delivery: Plan/device filtering and playback descriptors
"""

__version__ = "0.1.0"
