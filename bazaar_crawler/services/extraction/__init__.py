"""Page extraction: raw page content -> typed record(s) or None.

``extract`` is the single seam between the crawl engine and the site's
markup. It is a pure function: None means the target is absent, any
parsing error surfaces as ``ExtractionFailure`` with a content sample.
"""

import logging

from bazaar_crawler.config import settings
from bazaar_crawler.core.exceptions import ExtractionFailure
from bazaar_crawler.schemas.scan import ScrapeTarget, TargetKind
from bazaar_crawler.services.extraction.auctions import (
    parse_auction_detail,
    parse_current_detail,
    parse_current_list,
    parse_past_list,
)
from bazaar_crawler.services.extraction.bans import parse_bans_page
from bazaar_crawler.services.extraction.highscores import parse_highscores_page
from bazaar_crawler.services.extraction.transfers import parse_transfers_page

logger = logging.getLogger(__name__)


def _none_if_empty(records: list):
    return records or None


def extract(content: str, target: ScrapeTarget, url: str | None = None):
    """Parse ``content`` fetched for ``target``.

    Detail targets yield one record, page targets a non-empty list.
    """
    kind = target.kind
    try:
        if kind == TargetKind.AUCTION_DETAIL:
            return parse_auction_detail(content, target.external_id, url)
        if kind == TargetKind.CURRENT_DETAIL:
            return parse_current_detail(content, target.external_id, url)
        if kind == TargetKind.CURRENT_LIST:
            return _none_if_empty(parse_current_list(content, settings.BASE_URL))
        if kind == TargetKind.PAST_LIST:
            return _none_if_empty(parse_past_list(content, settings.BASE_URL))
        if kind == TargetKind.HIGHSCORE_PAGE:
            return _none_if_empty(
                parse_highscores_page(
                    content,
                    world=target.param("world", ""),
                    category=target.param("category", ""),
                    captured_date=target.param("captured_date"),
                )
            )
        if kind == TargetKind.BANS_PAGE:
            return _none_if_empty(parse_bans_page(content))
        if kind == TargetKind.TRANSFERS_PAGE:
            return _none_if_empty(parse_transfers_page(content))
    except ExtractionFailure:
        raise
    except Exception as e:
        raise ExtractionFailure(f"Could not parse {kind.value} page: {e}", content) from e
    raise ExtractionFailure(f"No parser for target kind {kind!r}", content)
