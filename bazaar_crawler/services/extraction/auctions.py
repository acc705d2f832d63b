"""Character bazaar pages: auction detail, current list and past list."""

import logging
import re

from bs4 import BeautifulSoup, Tag

from bazaar_crawler.schemas.records import AuctionRecord, CurrentAuctionRecord, coins_per_level
from bazaar_crawler.services.extraction.parsing import clean_text, parse_number, parse_signed_number

logger = logging.getLogger(__name__)

_ID_RE = re.compile(r"currentcharactertrades/(\d+)")
_LEVEL_RE = re.compile(r"Level:\s*(\d+)")
_VOCATION_RE = re.compile(r"Vocation:\s*([^|]+)")
_GENDER_RE = re.compile(r"\|\s*(Male|Female)\s*\|", re.IGNORECASE)
_WORLD_RE = re.compile(r"World:\s*(\S.*?)(?:\s*$|\n)")

_CHARM_RE = re.compile(r"Total Charm Points:\s*(\d+)(?:.*Unused Charm Points:\s*(\d+))?")
_BOSS_RE = re.compile(r"Total Boss Points:\s*(\d+)")
_DUST_RE = re.compile(r"Exalted Dust/Dust Limit:\s*(.+)")
_GOLD_RE = re.compile(r"^(\d+)\s+Gold")
_BESTIARY_RE = re.compile(r"Monsters in Bestiary completed:\s*(\d+)")

# Skill table rows: td.LabelColumn > b  ->  field
SKILL_FIELDS = {
    "magic level": "magic_level",
    "fist fighting": "fist",
    "club fighting": "club",
    "sword fighting": "sword",
    "axe fighting": "axe",
    "distance fighting": "distance",
    "shielding": "shielding",
    "fishing": "fishing",
}

# General tab: span.LabelV -> (field, is_numeric)
GENERAL_FIELDS = {
    "hit points:": ("hit_points", True),
    "mana:": ("mana", True),
    "capacity:": ("capacity", True),
    "speed:": ("speed", True),
    "blessings:": ("blessings_count", True),
    "mounts:": ("mounts_count", True),
    "outfits:": ("outfits_count", True),
    "titles:": ("titles_count", True),
    "achievement points:": ("achievement_points", True),
    "creation date:": ("creation_date", False),
    "experience:": ("experience", False),
}


def bid_status(bid_label: str) -> str:
    """'Winning Bid' -> sold, 'Cancelled' -> cancelled, anything else -> expired."""
    lower = bid_label.lower()
    if "winning" in lower:
        return "sold"
    if "cancel" in lower:
        return "cancelled"
    return "expired"


def _parse_header(auction: Tag) -> dict:
    """Fields every auction block carries, on list and detail pages alike."""
    name_el = auction.select_one(".AuctionCharacterName a") or auction.select_one(
        ".AuctionCharacterName"
    )
    header = auction.select_one(".AuctionHeader")
    header_text = header.get_text("\n") if header else ""

    level = _LEVEL_RE.search(header_text)
    vocation = _VOCATION_RE.search(header_text)
    gender = _GENDER_RE.search(header_text)
    world = _WORLD_RE.search(header_text)

    data = {
        "character_name": clean_text(name_el.get_text()) if name_el else "",
        "level": int(level.group(1)) if level else None,
        "vocation": clean_text(vocation.group(1)) if vocation else None,
        "gender": gender.group(1).strip().capitalize() if gender else None,
        "world": clean_text(world.group(1)) if world else None,
        "auction_start": None,
        "auction_end": None,
    }

    labels = auction.select(".ShortAuctionDataLabel")
    values = auction.select(".ShortAuctionDataValue")
    for label, value in zip(labels, values):
        label_text = clean_text(label.get_text())
        value_text = clean_text(value.get_text())
        if "Auction Start" in label_text:
            data["auction_start"] = value_text
        elif "Auction End" in label_text:
            data["auction_end"] = value_text

    data.update(_parse_special_features(auction))
    return data


def _parse_special_features(auction: Tag) -> dict:
    data: dict = {}
    for entry in auction.select(".SpecialCharacterFeatures .Entry"):
        text = clean_text(entry.get_text())
        if m := _CHARM_RE.search(text):
            data["charm_points"] = int(m.group(1))
            if m.group(2):
                data["unused_charm_points"] = int(m.group(2))
        elif m := _BOSS_RE.search(text):
            data["boss_points"] = int(m.group(1))
        elif m := _DUST_RE.search(text):
            data["exalted_dust"] = m.group(1).strip()
        elif m := _GOLD_RE.search(text):
            data["gold"] = int(m.group(1))
        elif m := _BESTIARY_RE.search(text):
            data["bestiary"] = int(m.group(1))
    return data


def _bid_row(auction: Tag) -> tuple[str, int | None]:
    row = auction.select_one(".ShortAuctionDataBidRow")
    if row is None:
        return "", None
    label = row.select_one(".ShortAuctionDataLabel")
    value = row.select_one(".ShortAuctionDataValue b") or row.select_one(".ShortAuctionDataValue")
    return (
        clean_text(label.get_text()) if label else "",
        parse_number(value.get_text()) if value else None,
    )


def _live_bids(auction: Tag) -> dict:
    """Minimum/current bid of a live auction. A current bid means someone bid."""
    minimum_bid = None
    current_bid = None
    labels = auction.select(".ShortAuctionDataLabel")
    values = auction.select(".ShortAuctionDataValue")
    for label, value in zip(labels, values):
        label_text = clean_text(label.get_text())
        if "Bid" not in label_text:
            continue
        if "Minimum" in label_text:
            minimum_bid = parse_number(value.get_text())
        elif "Current" in label_text:
            current_bid = parse_number(value.get_text())
    return {
        "minimum_bid": minimum_bid,
        "current_bid": current_bid,
        "has_been_bid_on": current_bid is not None,
    }


def _parse_details(soup: BeautifulSoup) -> dict:
    """Skills and general stats from a detail page's General tab."""
    data: dict = {}
    for label in soup.select("td.LabelColumn b"):
        field = SKILL_FIELDS.get(clean_text(label.get_text()).lower())
        if not field:
            continue
        row = label.find_parent("tr")
        cell = row.select_one("td.LevelColumn") if row else None
        value = parse_signed_number(cell.get_text()) if cell else None
        if value is not None:
            data[field] = value

    for label in soup.select("span.LabelV"):
        mapping = GENERAL_FIELDS.get(clean_text(label.get_text()).lower())
        if not mapping:
            continue
        field, numeric = mapping
        sibling = label.find_next_sibling("div")
        text = clean_text(sibling.get_text()) if sibling else ""
        if numeric:
            value = parse_signed_number(text)
            if value is not None:
                data[field] = value
        elif text:
            data[field] = text
    return data


def _auction_id(auction: Tag) -> str | None:
    link = auction.select_one(".AuctionCharacterName a")
    href = link.get("href", "") if link else ""
    match = _ID_RE.search(href)
    return match.group(1) if match else None


def parse_auction_detail(html: str, auction_id: str, url: str | None = None) -> AuctionRecord | None:
    """Detail page of a (usually finished) auction. None when the id is absent."""
    soup = BeautifulSoup(html, "lxml")
    auction = soup.select_one("div.Auction")
    if auction is None:
        return None

    data = _parse_header(auction)
    bid_label, bid_value = _bid_row(auction)
    status = bid_status(bid_label)
    sold_price = bid_value if status == "sold" else None
    data.update(_parse_details(soup))
    return AuctionRecord(
        external_id=auction_id,
        auction_status=status,
        sold_price=sold_price,
        coins_per_level=coins_per_level(sold_price, data["level"]),
        url=url,
        **data,
    )


def parse_current_detail(html: str, auction_id: str, url: str | None = None) -> CurrentAuctionRecord | None:
    soup = BeautifulSoup(html, "lxml")
    auction = soup.select_one("div.Auction")
    if auction is None:
        return None

    data = _parse_header(auction)
    data.update(_live_bids(auction))
    data.update(_parse_details(soup))
    return CurrentAuctionRecord(external_id=auction_id, url=url, **data)


def parse_current_list(html: str, base_url: str = "") -> list[CurrentAuctionRecord]:
    soup = BeautifulSoup(html, "lxml")
    records = []
    for auction in soup.select("div.Auction"):
        auction_id = _auction_id(auction)
        if not auction_id:
            continue
        data = _parse_header(auction)
        data.update(_live_bids(auction))
        records.append(
            CurrentAuctionRecord(
                external_id=auction_id,
                url=f"{base_url}/?currentcharactertrades/{auction_id}" if base_url else None,
                **data,
            )
        )
    return records


def parse_past_list(html: str, base_url: str = "") -> list[AuctionRecord]:
    soup = BeautifulSoup(html, "lxml")
    records = []
    for auction in soup.select("div.Auction"):
        auction_id = _auction_id(auction)
        if not auction_id:
            continue
        data = _parse_header(auction)
        bid_label, bid_value = _bid_row(auction)
        status = bid_status(bid_label)
        sold_price = bid_value if status == "sold" else None
        records.append(
            AuctionRecord(
                external_id=auction_id,
                auction_status=status,
                sold_price=sold_price,
                coins_per_level=coins_per_level(sold_price, data["level"]),
                url=f"{base_url}/?currentcharactertrades/{auction_id}" if base_url else None,
                **data,
            )
        )
    return records

