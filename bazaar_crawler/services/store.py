"""Relational store for crawled records.

``RecordStore`` is the narrow interface the crawl engine talks to;
``SqlRecordStore`` implements it on the async SQLAlchemy ORM. Upserts
are keyed by the external identifier with last-write-wins for the
fields a record carries (None never overwrites a stored value).
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from bazaar_crawler.core.database import init_models
from bazaar_crawler.core.exceptions import StoreWriteFailure
from bazaar_crawler.models import Auction, Ban, CurrentAuction, HighscoreEntry, Transfer
from bazaar_crawler.schemas.records import (
    AuctionRecord,
    BanRecord,
    CurrentAuctionRecord,
    HighscoreRecord,
    TransferRecord,
)
from bazaar_crawler.schemas.scan import ScanKind

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
_ID_CHUNK = 500


class RecordStore(Protocol):
    async def upsert(self, record) -> None: ...

    async def find_active_ids(self, kind: ScanKind) -> set[str]: ...

    async def find_known_ids(self, kind: ScanKind) -> set[str]: ...

    async def max_known_id(self) -> int | None: ...

    async def get_active(self, kind: ScanKind, ids: Iterable[str]) -> list[CurrentAuctionRecord]: ...

    async def mark_inactive(self, kind: ScanKind, ids: Iterable[str]) -> int: ...

    async def historical_exists(self, external_id: str) -> bool: ...

    async def insert_historical(self, record: AuctionRecord) -> bool: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(ids: Iterable[str]):
    ids = list(ids)
    for i in range(0, len(ids), _ID_CHUNK):
        yield ids[i : i + _ID_CHUNK]


def _active_model(kind: ScanKind):
    if kind == ScanKind.CURRENT_AUCTIONS:
        return CurrentAuction
    if kind == ScanKind.BANS:
        return Ban
    raise ValueError(f"{kind.value} has no active record set")


def _known_model(kind: ScanKind):
    if kind in (ScanKind.AUCTION_IDS, ScanKind.AUCTION_HISTORY):
        return Auction
    if kind == ScanKind.CURRENT_AUCTIONS:
        return CurrentAuction
    if kind == ScanKind.BANS:
        return Ban
    if kind == ScanKind.TRANSFERS:
        return Transfer
    raise ValueError(f"{kind.value} has no external identifiers")


class SqlRecordStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], engine: AsyncEngine | None = None):
        self.session_factory = session_factory
        self.engine = engine

    async def init_models(self) -> None:
        if self.engine is not None:
            await init_models(self.engine)

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, record) -> None:
        external_id = getattr(record, "external_id", "?")
        try:
            async with self.session_factory() as db:
                if isinstance(record, AuctionRecord):
                    await self._upsert_keyed(db, Auction, record)
                elif isinstance(record, CurrentAuctionRecord):
                    await self._upsert_keyed(
                        db, CurrentAuction, record, is_active=True, last_seen_at=_utcnow()
                    )
                elif isinstance(record, BanRecord):
                    await self._upsert_keyed(db, Ban, record, is_active=True)
                elif isinstance(record, TransferRecord):
                    await self._insert_transfer(db, record)
                elif isinstance(record, HighscoreRecord):
                    await self._upsert_highscore(db, record)
                else:
                    raise TypeError(f"Unsupported record type {type(record).__name__}")
                await db.commit()
        except SQLAlchemyError as e:
            raise StoreWriteFailure(external_id, e) from e

    async def _upsert_keyed(self, db: AsyncSession, model, record, **extra) -> None:
        values = record.model_dump(exclude_none=True)
        values.update(extra)
        result = await db.execute(select(model).where(model.external_id == record.external_id))
        row = result.scalar_one_or_none()
        if row is None:
            db.add(model(**values))
        else:
            for key, value in values.items():
                setattr(row, key, value)

    async def _insert_transfer(self, db: AsyncSession, record: TransferRecord) -> None:
        # Append-only: a transfer row never changes once seen
        result = await db.execute(
            select(Transfer.id).where(Transfer.external_id == record.external_id)
        )
        if result.scalar_one_or_none() is None:
            db.add(Transfer(**record.model_dump()))

    async def _upsert_highscore(self, db: AsyncSession, record: HighscoreRecord) -> None:
        values = record.model_dump(exclude={"external_id"})
        result = await db.execute(
            select(HighscoreEntry).where(
                HighscoreEntry.character_name == record.character_name,
                HighscoreEntry.world == record.world,
                HighscoreEntry.category == record.category,
                HighscoreEntry.captured_date == record.captured_date,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            db.add(HighscoreEntry(**values))
        else:
            for key, value in values.items():
                setattr(row, key, value)

    async def mark_inactive(self, kind: ScanKind, ids: Iterable[str]) -> int:
        model = _active_model(kind)
        total = 0
        async with self.session_factory() as db:
            for chunk in _chunks(ids):
                result = await db.execute(
                    update(model)
                    .where(model.external_id.in_(chunk), model.is_active.is_(True))
                    .values(is_active=False)
                )
                total += result.rowcount or 0
            await db.commit()
        return total

    async def insert_historical(self, record: AuctionRecord) -> bool:
        """Insert a terminal snapshot. False when one already exists."""
        try:
            async with self.session_factory() as db:
                db.add(Auction(**record.model_dump(exclude_none=True)))
                await db.commit()
        except IntegrityError:
            logger.debug("History row for %s already exists", record.external_id)
            return False
        except SQLAlchemyError as e:
            raise StoreWriteFailure(record.external_id, e) from e
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find_active_ids(self, kind: ScanKind) -> set[str]:
        model = _active_model(kind)
        async with self.session_factory() as db:
            result = await db.execute(select(model.external_id).where(model.is_active.is_(True)))
            return set(result.scalars().all())

    async def find_known_ids(self, kind: ScanKind) -> set[str]:
        model = _known_model(kind)
        async with self.session_factory() as db:
            result = await db.execute(select(model.external_id))
            return set(result.scalars().all())

    async def max_known_id(self) -> int | None:
        """Highest numeric auction id in history (ids are stored as text)."""
        ids = await self.find_known_ids(ScanKind.AUCTION_IDS)
        numeric = [int(i) for i in ids if i.isdigit()]
        return max(numeric) if numeric else None

    async def get_active(self, kind: ScanKind, ids: Iterable[str]) -> list[CurrentAuctionRecord]:
        if kind != ScanKind.CURRENT_AUCTIONS:
            raise ValueError(f"{kind.value} keeps no archivable snapshots")
        fields = [name for name in CurrentAuctionRecord.model_fields]
        records = []
        async with self.session_factory() as db:
            for chunk in _chunks(ids):
                result = await db.execute(
                    select(CurrentAuction).where(CurrentAuction.external_id.in_(chunk))
                )
                for row in result.scalars().all():
                    records.append(
                        CurrentAuctionRecord(**{name: getattr(row, name) for name in fields})
                    )
        return records

    async def historical_exists(self, external_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(select(Auction.id).where(Auction.external_id == external_id))
            return result.scalar_one_or_none() is not None
