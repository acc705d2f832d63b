from bs4 import BeautifulSoup

from bazaar_crawler.schemas.records import TransferRecord
from bazaar_crawler.services.extraction.parsing import clean_text, parse_number


def parse_transfers_page(html: str) -> list[TransferRecord]:
    soup = BeautifulSoup(html, "lxml")
    transfers = []
    for row in soup.select("table tbody tr"):
        cells = row.find_all("td")
        if len(cells) < 5:
            continue
        # Columns: date, player, level, from, (arrow icon), to
        player_name = clean_text(cells[1].get_text())
        from_world = clean_text(cells[3].get_text())
        to_world = clean_text(cells[5].get_text()) if len(cells) > 5 else ""
        if not (player_name and from_world and to_world):
            continue
        transfers.append(
            TransferRecord(
                player_name=player_name,
                from_world=from_world,
                to_world=to_world,
                level=parse_number(cells[2].get_text()),
                transfer_date=clean_text(cells[0].get_text()) or None,
            )
        )
    return transfers
