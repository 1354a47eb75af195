"""
SQLAlchemy ORM Models for the IPTV service

Per-profile encrypted configuration and the resolver's persisted cache tiers.
"""
from datetime import datetime, timezone
from sqlalchemy import String, Text, DateTime, Float, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models"""
    pass


class ProfileConfig(Base):
    """Encrypted playlist/guide inputs and favorites for one profile"""
    __tablename__ = "profile_configs"

    profile_id: Mapped[str] = mapped_column(String, primary_key=True)
    playlist_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    guide_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    favorite_groups: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    favorite_channels: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<ProfileConfig(profile_id={self.profile_id})>"


class ResolverCacheEntry(Base):
    """One persisted resolver record (resolved episode, binding, catalog or series info)"""
    __tablename__ = "resolver_cache_entries"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    cache_key: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    saved_at: Mapped[float] = mapped_column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("kind", "cache_key", name="uq_resolver_kind_key"),
        Index("idx_resolver_kind_saved", "kind", "saved_at"),
    )

    def __repr__(self) -> str:
        return f"<ResolverCacheEntry(kind={self.kind}, cache_key={self.cache_key})>"
