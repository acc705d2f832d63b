"""Auction models: live listings and their terminal history snapshots."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from bazaar_crawler.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CharacterColumns:
    """Character attributes shared by live and archived auctions."""

    external_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    character_name: Mapped[str] = mapped_column(String(64), nullable=False)
    level: Mapped[int | None] = mapped_column(Integer)
    vocation: Mapped[str | None] = mapped_column(String(32))
    gender: Mapped[str | None] = mapped_column(String(8))
    world: Mapped[str | None] = mapped_column(String(32))
    auction_start: Mapped[str | None] = mapped_column(String(64))
    auction_end: Mapped[str | None] = mapped_column(String(64))
    minimum_bid: Mapped[int | None] = mapped_column(Integer)
    current_bid: Mapped[int | None] = mapped_column(Integer)
    has_been_bid_on: Mapped[bool] = mapped_column(Boolean, default=False)

    # Skills
    magic_level: Mapped[int | None] = mapped_column(Integer)
    fist: Mapped[int | None] = mapped_column(Integer)
    club: Mapped[int | None] = mapped_column(Integer)
    sword: Mapped[int | None] = mapped_column(Integer)
    axe: Mapped[int | None] = mapped_column(Integer)
    distance: Mapped[int | None] = mapped_column(Integer)
    shielding: Mapped[int | None] = mapped_column(Integer)
    fishing: Mapped[int | None] = mapped_column(Integer)

    # General stats
    hit_points: Mapped[int | None] = mapped_column(Integer)
    mana: Mapped[int | None] = mapped_column(Integer)
    capacity: Mapped[int | None] = mapped_column(Integer)
    speed: Mapped[int | None] = mapped_column(Integer)
    experience: Mapped[str | None] = mapped_column(String(32))  # exceeds 64-bit on some chars
    creation_date: Mapped[str | None] = mapped_column(String(64))
    achievement_points: Mapped[int | None] = mapped_column(Integer)
    mounts_count: Mapped[int | None] = mapped_column(Integer)
    outfits_count: Mapped[int | None] = mapped_column(Integer)
    titles_count: Mapped[int | None] = mapped_column(Integer)
    blessings_count: Mapped[int | None] = mapped_column(Integer)

    # Special features
    charm_points: Mapped[int | None] = mapped_column(Integer)
    unused_charm_points: Mapped[int | None] = mapped_column(Integer)
    boss_points: Mapped[int | None] = mapped_column(Integer)
    exalted_dust: Mapped[str | None] = mapped_column(String(32))
    gold: Mapped[int | None] = mapped_column(Integer)
    bestiary: Mapped[int | None] = mapped_column(Integer)

    url: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class Auction(CharacterColumns, Base):
    """Append-only history: at most one row per external_id."""

    __tablename__ = "auctions"
    __table_args__ = (
        Index("ix_auctions_world", "world"),
        Index("ix_auctions_vocation_level", "vocation", "level"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    auction_status: Mapped[str | None] = mapped_column(String(16))  # sold, expired, cancelled
    sold_price: Mapped[int | None] = mapped_column(Integer, index=True)
    coins_per_level: Mapped[float | None] = mapped_column(Float)


class CurrentAuction(CharacterColumns, Base):
    """Live listing; deactivated (never deleted) once it leaves the site."""

    __tablename__ = "current_auctions"
    __table_args__ = (Index("ix_current_auctions_is_active", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
