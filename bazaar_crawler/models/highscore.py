from datetime import date, datetime, timezone

from sqlalchemy import BigInteger, Date, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bazaar_crawler.core.database import Base


class HighscoreEntry(Base):
    """One leaderboard row, captured once per day per (world, category)."""

    __tablename__ = "highscore_entries"
    __table_args__ = (
        UniqueConstraint(
            "character_name", "world", "category", "captured_date",
            name="uq_highscore_entries_name_world_category_date",
        ),
        Index("ix_highscore_entries_world_category_date", "world", "category", "captured_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    character_name: Mapped[str] = mapped_column(String(64), nullable=False)
    world: Mapped[str] = mapped_column(String(32), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    vocation: Mapped[str | None] = mapped_column(String(32))
    level: Mapped[int | None] = mapped_column(Integer)
    rank: Mapped[int] = mapped_column(Integer)
    score: Mapped[int] = mapped_column(BigInteger)
    captured_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
