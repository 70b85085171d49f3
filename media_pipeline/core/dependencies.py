"""FastAPI dependencies for components built once at startup.

The application factory stores the key manager, orchestrator and resolver
settings on ``app.state``; routers read them through these functions so
tests can build an app around fakes.
"""

from fastapi import Request

from media_pipeline.modules.media.keys import StorageKeyManager
from media_pipeline.modules.transcoding.service import TranscodeOrchestrator


def get_key_manager(request: Request) -> StorageKeyManager:
    return request.app.state.key_manager


def get_orchestrator(request: Request) -> TranscodeOrchestrator:
    return request.app.state.orchestrator


def get_delivery_ttl(request: Request) -> int:
    """Lifetime of URLs handed to players."""
    return request.app.state.delivery_ttl_seconds
