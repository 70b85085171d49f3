"""Application modules.

- ladder: Static quality ladder
- media: Upload, storage keys, renditions
- transcoding: External encoder jobs and their state machine
- manifest: HLS/DASH documents
- delivery: Entitlement-aware playback resolution
"""
