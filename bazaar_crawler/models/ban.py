from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, String, Text, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from bazaar_crawler.core.database import Base


class Ban(Base):
    __tablename__ = "bans"
    __table_args__ = (
        UniqueConstraint("player_name", "banned_at", name="uq_bans_player_banned_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(160), nullable=False, unique=True)
    player_name: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    banned_at: Mapped[str | None] = mapped_column(String(64))
    expires_at: Mapped[str | None] = mapped_column(String(64))
    is_permanent: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
