"""Shared fixtures: a throwaway SQLite database, an in-memory object store,
a scriptable transcoder and a controllable clock."""

import asyncio
import uuid
from collections import deque
from datetime import datetime, timedelta
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from media_pipeline.core.database import Base
from media_pipeline.core.retry import RetryConfig
from media_pipeline.core.storage import ObjectStore, StorageTransportError, StoredObject, normalize_key
from media_pipeline.modules.media import models as media_models  # noqa: F401
from media_pipeline.modules.media.keys import StorageKeyManager
from media_pipeline.modules.media.repository import AssetRepository, RenditionRepository
from media_pipeline.modules.transcoding import models as transcoding_models  # noqa: F401
from media_pipeline.modules.transcoding.client import (
    ExternalJobState,
    ExternalJobStatus,
    JobDescription,
    TranscoderClient,
    TranscoderTransportError,
)
from media_pipeline.modules.transcoding.service import TranscodeOrchestrator

CDN_BASE = "https://cdn.example.com"


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class InMemoryObjectStore(ObjectStore):
    """Dict-backed store with injectable transport failures."""

    def __init__(self, base_url: str = "https://storage.example.com/bucket"):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.base_url = base_url
        self.put_failures = 0
        self.presign_failures = 0
        self.retryable = True
        self.put_calls = 0
        self.deleted: list[str] = []
        self._presign_counter = 0

    def put(self, key, data, content_type="application/octet-stream"):
        self.put_calls += 1
        if self.put_failures > 0:
            self.put_failures -= 1
            raise StorageTransportError("simulated network failure", retryable=self.retryable)
        key = normalize_key(key)
        self.objects[key] = (bytes(data), content_type)
        return StoredObject(key=key, size=len(data), etag=None)

    def presign(self, key, expires_in):
        if self.presign_failures > 0:
            self.presign_failures -= 1
            raise StorageTransportError("simulated presign failure")
        self._presign_counter += 1
        return f"{self.base_url}/{normalize_key(key)}?expires_in={expires_in}&nonce={self._presign_counter}"

    def list_keys(self, prefix=""):
        return sorted(k for k in self.objects if k.startswith(prefix))

    def delete(self, key):
        key = normalize_key(key)
        self.deleted.append(key)
        self.objects.pop(key, None)

    def exists(self, key):
        return normalize_key(key) in self.objects

    def public_base_url(self):
        return self.base_url


class FakeTranscoder(TranscoderClient):
    """Scriptable transcoder.

    ``submit_errors`` are raised, in order, before submissions start to
    succeed. ``statuses`` maps an external id to a queue of reports; the
    last report repeats once the queue is drained.
    """

    def __init__(self):
        self.submit_errors: deque[Exception] = deque()
        self.status_errors: deque[Exception] = deque()
        self.statuses: dict[str, deque[ExternalJobStatus]] = {}
        self.submitted: list[JobDescription] = []
        self.status_calls: list[str] = []
        self.submit_gate: Optional[asyncio.Event] = None
        self.status_gate: Optional[asyncio.Event] = None
        self.closed = False

    async def submit(self, description):
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if self.submit_errors:
            raise self.submit_errors.popleft()
        self.submitted.append(description)
        return f"ext-{len(self.submitted)}"

    async def get_status(self, external_job_id):
        self.status_calls.append(external_job_id)
        if self.status_gate is not None:
            await self.status_gate.wait()
        if self.status_errors:
            raise self.status_errors.popleft()
        queue = self.statuses.get(external_job_id)
        if not queue:
            return ExternalJobStatus(state=ExternalJobState.IN_PROGRESS)
        if len(queue) > 1:
            return queue.popleft()
        return queue[0]

    def report(self, external_job_id, *statuses):
        self.statuses[external_job_id] = deque(statuses)

    def fail_submissions(self, count, message="connection reset"):
        self.submit_errors.extend(TranscoderTransportError(message) for _ in range(count))

    async def close(self):
        self.closed = True


async def _no_sleep(_delay):
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def object_store():
    return InMemoryObjectStore()


@pytest.fixture
def key_manager(object_store, clock):
    return StorageKeyManager(
        object_store,
        cdn_base_url=CDN_BASE,
        max_ttl_seconds=3600,
        retry_config=RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0),
        clock=clock,
        sleep=lambda _delay: None,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def transcoder():
    return FakeTranscoder()


def build_test_orchestrator(session_factory, transcoder, clock):
    """An orchestrator with instant retries; each one has its own lock map, like a separate worker."""
    return TranscodeOrchestrator(
        session_factory,
        transcoder,
        submit_retry=RetryConfig(max_attempts=5, initial_delay=0.0, max_delay=0.0),
        poll_retry=RetryConfig(max_attempts=3, initial_delay=0.0, max_delay=0.0),
        call_timeout=1.0,
        job_timeout_seconds=3600,
        default_ladder=["hd1080", "hd720", "sd480"],
        clock=clock,
        sleep=_no_sleep,
    )


@pytest.fixture
def orchestrator(session_factory, transcoder, clock):
    return build_test_orchestrator(session_factory, transcoder, clock)


@pytest.fixture
def make_asset(session_factory):
    """Create an asset, optionally with ready renditions."""

    async def _make(
        source_key: Optional[str] = None,
        ready: tuple[str, ...] = (),
        duration_seconds: float = 120.0,
    ):
        source_key = source_key or f"videos/1700000000000-{uuid.uuid4().hex[:8]}-movie.mp4"
        base_key = source_key.rsplit(".", 1)[0]
        async with session_factory() as session:
            asset = await AssetRepository(session).create(
                source_key=source_key,
                title="Movie",
                duration_seconds=duration_seconds,
                size_bytes=1024,
            )
            renditions = RenditionRepository(session)
            for quality_id in ready:
                await renditions.register_ready(asset.id, quality_id, f"{base_key}/{quality_id}/playlist.m3u8")
            await session.commit()
            return asset

    return _make
