"""
SQLAlchemy ORM Models for the ingestion store

This module defines the tables for playlists, their categories, channels,
EPG entries and user favorites.
"""
from datetime import datetime, timezone
from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


class PlaylistRow(Base):
    """A configured playlist source and its sync state"""
    __tablename__ = "playlists"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    source_kind: Mapped[str] = mapped_column(String, nullable=False)
    connection: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    epg_url: Mapped[str | None] = mapped_column(String, nullable=True)
    last_synced_at: Mapped[str | None] = mapped_column(String, nullable=True)
    sync_status: Mapped[str] = mapped_column(String, nullable=False, default="idle")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    dropped_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))

    def __repr__(self) -> str:
        return f"<PlaylistRow(id={self.id}, name={self.name}, kind={self.source_kind})>"


class CategoryRow(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    playlist_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("playlists.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_id: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        Index("idx_categories_playlist", "playlist_id"),
    )


class ChannelRow(Base):
    """Channel model; stale rows are favorites whose source no longer lists them"""
    __tablename__ = "channels"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    playlist_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("playlists.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    stream_url: Mapped[str] = mapped_column(String, nullable=False)
    logo_url: Mapped[str | None] = mapped_column(String, nullable=True)
    category_id: Mapped[str | None] = mapped_column(String, nullable=True)
    epg_channel_id: Mapped[str | None] = mapped_column(String, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    catchup_mode: Mapped[str | None] = mapped_column(String, nullable=True)
    catchup_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    catchup_source: Mapped[str | None] = mapped_column(String, nullable=True)
    stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_channels_playlist_position", "playlist_id", "position"),
    )

    def __repr__(self) -> str:
        return f"<ChannelRow(id={self.id}, name={self.name}, stale={self.stale})>"


class EpgEntryRow(Base):
    """Programme slot; times are stored as UTC ISO-8601 strings"""
    __tablename__ = "epg_entries"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    playlist_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("playlists.id", ondelete="CASCADE"),
        nullable=False
    )
    channel_key: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    start_time: Mapped[str] = mapped_column(String, nullable=False)
    end_time: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("idx_epg_playlist_channel_time", "playlist_id", "channel_key", "start_time"),
    )

    def __repr__(self) -> str:
        return f"<EpgEntryRow(id={self.id}, title={self.title}, channel={self.channel_key})>"


class FavoriteRow(Base):
    """Favorites reference channels by id without a foreign key so they outlive syncs"""
    __tablename__ = "favorites"

    playlist_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("playlists.id", ondelete="CASCADE"),
        primary_key=True
    )
    channel_id: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=lambda: datetime.now(timezone.utc))
