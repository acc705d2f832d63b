"""Typed records produced by page extraction and consumed by the store."""

from datetime import date

from pydantic import BaseModel, computed_field


class CharacterFields(BaseModel):
    external_id: str
    character_name: str
    level: int | None = None
    vocation: str | None = None
    gender: str | None = None
    world: str | None = None
    auction_start: str | None = None
    auction_end: str | None = None
    minimum_bid: int | None = None
    current_bid: int | None = None
    has_been_bid_on: bool | None = None

    magic_level: int | None = None
    fist: int | None = None
    club: int | None = None
    sword: int | None = None
    axe: int | None = None
    distance: int | None = None
    shielding: int | None = None
    fishing: int | None = None

    hit_points: int | None = None
    mana: int | None = None
    capacity: int | None = None
    speed: int | None = None
    experience: str | None = None
    creation_date: str | None = None
    achievement_points: int | None = None
    mounts_count: int | None = None
    outfits_count: int | None = None
    titles_count: int | None = None
    blessings_count: int | None = None

    charm_points: int | None = None
    unused_charm_points: int | None = None
    boss_points: int | None = None
    exalted_dust: str | None = None
    gold: int | None = None
    bestiary: int | None = None

    url: str | None = None


class AuctionRecord(CharacterFields):
    """Terminal snapshot of an auction (history)."""

    auction_status: str | None = None
    sold_price: int | None = None
    coins_per_level: float | None = None


class CurrentAuctionRecord(CharacterFields):
    """Live auction. List rows carry only the header and bid fields;
    detail pages fill in skills and stats."""


class HighscoreRecord(BaseModel):
    character_name: str
    world: str
    category: str
    vocation: str | None = None
    level: int | None = None
    rank: int
    score: int
    captured_date: date

    @computed_field
    @property
    def external_id(self) -> str:
        return f"{self.world}:{self.category}:{self.character_name}:{self.captured_date.isoformat()}"


class BanRecord(BaseModel):
    player_name: str
    reason: str | None = None
    banned_at: str | None = None
    expires_at: str | None = None
    is_permanent: bool = False

    @computed_field
    @property
    def external_id(self) -> str:
        return f"{self.player_name}@{self.banned_at or ''}"


class TransferRecord(BaseModel):
    player_name: str
    from_world: str
    to_world: str
    level: int | None = None
    transfer_date: str | None = None

    @computed_field
    @property
    def external_id(self) -> str:
        return f"{self.player_name}@{self.transfer_date or ''}>{self.to_world}"


Record = AuctionRecord | CurrentAuctionRecord | HighscoreRecord | BanRecord | TransferRecord


def coins_per_level(price: int | None, level: int | None) -> float | None:
    """Price divided by level, rounded to cents. None without both."""
    if not price or not level or level <= 0:
        return None
    return round(price / level, 2)


def archive_snapshot(active: CurrentAuctionRecord) -> AuctionRecord:
    """Derive the terminal history snapshot of a live auction that ended.

    The site publishes no authoritative end state for live auctions, so
    the status is a best-effort inference: any bid means sold, no bid
    means expired.
    """
    sold_price = active.current_bid if active.current_bid is not None else active.minimum_bid
    data = active.model_dump()
    return AuctionRecord(
        **data,
        auction_status="sold" if active.has_been_bid_on else "expired",
        sold_price=sold_price,
        coins_per_level=coins_per_level(sold_price, active.level),
    )
