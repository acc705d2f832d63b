from bs4 import BeautifulSoup

from bazaar_crawler.schemas.records import BanRecord
from bazaar_crawler.services.extraction.parsing import clean_text


def parse_bans_page(html: str) -> list[BanRecord]:
    """Columns: player, reason, banned at, expires ("Permanente" for permanent bans)."""
    soup = BeautifulSoup(html, "lxml")
    bans = []
    for row in soup.select("table tbody tr"):
        cells = row.find_all("td")
        if len(cells) < 4:
            continue
        player_name = clean_text(cells[0].get_text())
        if not player_name:
            continue
        expires = clean_text(cells[3].get_text())
        is_permanent = "permanente" in expires.lower()
        bans.append(
            BanRecord(
                player_name=player_name,
                reason=clean_text(cells[1].get_text()) or None,
                banned_at=clean_text(cells[2].get_text()) or None,
                expires_at=None if is_permanent else (expires or None),
                is_permanent=is_permanent,
            )
        )
    return bans
