from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from bazaar_crawler.core.database import Base


class Transfer(Base):
    """World transfer row. Append-only; keyed by player + date + destination."""

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    player_name: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_world: Mapped[str] = mapped_column(String(32), nullable=False)
    to_world: Mapped[str] = mapped_column(String(32), nullable=False)
    level: Mapped[int | None] = mapped_column(Integer)
    transfer_date: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
