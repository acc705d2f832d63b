import logging
from datetime import date

from bs4 import BeautifulSoup

from bazaar_crawler.schemas.records import HighscoreRecord
from bazaar_crawler.services.extraction.parsing import clean_text, parse_number

logger = logging.getLogger(__name__)


def parse_highscores_page(
    html: str, world: str, category: str, captured_date: date | None = None
) -> list[HighscoreRecord]:
    """Rows of ``table.TableContent``: rank, name, vocation, world, level, points."""
    soup = BeautifulSoup(html, "lxml")
    captured_date = captured_date or date.today()
    entries = []

    for row in soup.select("table.TableContent tbody tr"):
        if "LabelH" in (row.get("class") or []):
            continue
        cells = row.find_all("td")
        if len(cells) < 6:
            continue

        rank = parse_number(cells[0].get_text())
        name = clean_text(cells[1].get_text())
        level = parse_number(cells[4].get_text())
        score = parse_number(cells[5].get_text())
        if rank is None or not name or level is None or score is None:
            logger.debug("Skipping malformed highscore row: %s", clean_text(row.get_text()))
            continue

        entries.append(
            HighscoreRecord(
                character_name=name,
                world=clean_text(cells[3].get_text()) or world,
                category=category,
                vocation=clean_text(cells[2].get_text()) or "Unknown",
                level=level,
                rank=rank,
                score=score,
                captured_date=captured_date,
            )
        )
    return entries
