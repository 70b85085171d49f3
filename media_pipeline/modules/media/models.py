"""Database models for uploaded assets and their renditions."""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from media_pipeline.core.database import Base, utc_now


class Asset(Base):
    """An uploaded source file.

    Only created after the source object has been written to storage.
    """
    __tablename__ = "assets"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    source_key = Column(String(1024), nullable=False, unique=True)
    title = Column(String(512), nullable=False)
    duration_seconds = Column(Float, nullable=False, default=0.0)
    content_type = Column(String(255), nullable=False, default="video/mp4")
    size_bytes = Column(Integer, nullable=False, default=0)
    poster_key = Column(String(1024), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    renditions = relationship(
        "Rendition",
        back_populates="asset",
        lazy="selectin",
        order_by="Rendition.created_at",
    )
    subtitles = relationship(
        "SubtitleTrack",
        back_populates="asset",
        lazy="selectin",
        order_by="SubtitleTrack.language",
    )

    def __repr__(self) -> str:
        return f"<Asset {self.id} - {self.source_key}>"


class Rendition(Base):
    """One encoded quality of an asset.

    Immutable once ``ready`` is true.
    """
    __tablename__ = "renditions"
    __table_args__ = (
        UniqueConstraint("asset_id", "quality_id", name="uq_rendition_asset_quality"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    asset_id = Column(Uuid, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True)
    quality_id = Column(String(32), nullable=False)
    storage_key = Column(String(1024), nullable=False)
    ready = Column(Boolean, nullable=False, default=False)
    transcode_job_id = Column(Uuid, ForeignKey("transcode_jobs.id"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    asset = relationship("Asset", back_populates="renditions")

    def __repr__(self) -> str:
        return f"<Rendition {self.asset_id}/{self.quality_id} ready={self.ready}>"


class SubtitleTrack(Base):
    """A subtitle file attached to an asset."""
    __tablename__ = "subtitle_tracks"
    __table_args__ = (
        UniqueConstraint("asset_id", "language", name="uq_subtitle_asset_language"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    asset_id = Column(Uuid, ForeignKey("assets.id", ondelete="CASCADE"), nullable=False, index=True)
    language = Column(String(16), nullable=False)
    label = Column(String(64), nullable=False)
    storage_key = Column(String(1024), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    asset = relationship("Asset", back_populates="subtitles")

    def __repr__(self) -> str:
        return f"<SubtitleTrack {self.asset_id}/{self.language}>"
