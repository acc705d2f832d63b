"""Target construction: URLs per target kind and the highscore queue."""

import hashlib
import logging
from datetime import date
from urllib.parse import urlencode

from bazaar_crawler.config import settings
from bazaar_crawler.schemas.scan import HighscoreQuery, ScrapeTarget, TargetKind

logger = logging.getLogger(__name__)

WORLDS = (
    "Auroria",
    "Belaria",
    "Bellum",
    "Elysian",
    "Lunarian",
    "Mystian",
    "Serenian",
    "Serenian II",
    "Serenian III",
    "Serenian IV",
    "Solarian",
    "Spectrum",
    "Tenebrium",
    "Vesperia",
)

# Category name -> value of the site's ``category`` query parameter
HIGHSCORE_CATEGORIES = {
    "experience": "6",
    "magic": "magic",
    "fist": "fist",
    "club": "club",
    "sword": "sword",
    "axe": "axe",
    "distance": "distance",
    "shielding": "shielding",
    "fishing": "fishing",
}

CATEGORY_ALIASES = {
    "exp": "experience",
    "ml": "magic",
    "magic level": "magic",
    "shield": "shielding",
    "dist": "distance",
}

# Profession name -> value of the site's ``profession`` query parameter
HIGHSCORE_PROFESSIONS = {
    "All": "0",
    "Knights": "2",
    "Paladins": "3",
    "Sorcerers": "4",
    "Druids": "5",
    "Monks": "6",
}

PROFESSION_ALIASES = {
    "all": "All",
    "knights": "Knights",
    "ek": "Knights",
    "paladins": "Paladins",
    "rp": "Paladins",
    "sorcerers": "Sorcerers",
    "ms": "Sorcerers",
    "druids": "Druids",
    "ed": "Druids",
    "monks": "Monks",
}

# Skill leaderboards that say nothing about a vocation
SKIP_RULES = {
    "Paladins": frozenset({"sword", "axe", "shielding", "club", "fist"}),
    "Sorcerers": frozenset({"sword", "axe", "shielding", "club", "distance", "fist"}),
    "Druids": frozenset({"sword", "axe", "shielding", "club", "distance", "fist"}),
    "Knights": frozenset({"distance", "fist"}),
    "Monks": frozenset({"sword", "shielding", "axe", "club", "distance"}),
}

# Default daily run leaves out the unfiltered "All" board
DAILY_PROFESSIONS = tuple(p for p in HIGHSCORE_PROFESSIONS if p != "All")


def should_skip_combo(category: str, profession: str) -> bool:
    return category in SKIP_RULES.get(profession, frozenset())


def resolve_world(name: str) -> str:
    for world in WORLDS:
        if world.lower() == name.lower():
            return world
    raise ValueError(f"Unknown world {name!r}. Available: {', '.join(WORLDS)}")


def resolve_category(name: str) -> str:
    key = name.lower()
    key = CATEGORY_ALIASES.get(key, key)
    if key not in HIGHSCORE_CATEGORIES:
        raise ValueError(f"Unknown category {name!r}. Available: {', '.join(HIGHSCORE_CATEGORIES)}")
    return key


def resolve_profession(name: str) -> str:
    for profession in HIGHSCORE_PROFESSIONS:
        if profession.lower() == name.lower():
            return profession
    alias = PROFESSION_ALIASES.get(name.lower())
    if alias is None:
        raise ValueError(f"Unknown vocation {name!r}. Available: {', '.join(HIGHSCORE_PROFESSIONS)}")
    return alias


def combo_key(world: str, category: str, profession: str) -> str:
    return f"{world}|{category}|{profession}"


def highscore_targets(query: HighscoreQuery) -> list[ScrapeTarget]:
    """Expand world x category x profession x page into an ordered queue.

    Irrelevant skill/vocation pairs are dropped. Each combo is one group:
    an empty page ends the combo.
    """
    worlds = query.worlds or WORLDS
    categories = query.categories or tuple(HIGHSCORE_CATEGORIES)
    professions = query.professions or tuple(HIGHSCORE_PROFESSIONS)
    pages = query.pages or settings.HIGHSCORE_MAX_PAGES
    captured = query.captured_date or date.today()

    targets: list[ScrapeTarget] = []
    skipped = 0
    for world in worlds:
        for category in categories:
            for profession in professions:
                if should_skip_combo(category, profession):
                    skipped += 1
                    continue
                group = combo_key(world, category, profession)
                for page in range(1, pages + 1):
                    targets.append(
                        ScrapeTarget(
                            kind=TargetKind.HIGHSCORE_PAGE,
                            cursor=len(targets),
                            params=(
                                ("world", world),
                                ("category", category),
                                ("profession", profession),
                                ("page", page),
                                ("captured_date", captured),
                            ),
                            group=group,
                        )
                    )
    logger.info(
        "Highscore queue: %d page targets, %d irrelevant combos skipped", len(targets), skipped
    )
    return targets


def list_targets(kind: TargetKind, max_pages: int | None = None) -> list[ScrapeTarget]:
    """Paged list: pages 1..N in one group, so the first empty page ends it."""
    pages = max_pages or settings.LIST_MAX_PAGES
    return [
        ScrapeTarget(kind=kind, cursor=index, params=(("page", index + 1),), group=kind.value)
        for index in range(pages)
    ]


def single_page_targets(kind: TargetKind) -> list[ScrapeTarget]:
    return [ScrapeTarget(kind=kind, cursor=0)]


def detail_target(kind: TargetKind, external_id: str, cursor: int) -> ScrapeTarget:
    return ScrapeTarget(kind=kind, cursor=cursor, external_id=str(external_id))


def queue_fingerprint(targets: list[ScrapeTarget]) -> str:
    """Stable digest of a queue; a resumed scan must see the same queue."""
    digest = hashlib.sha256()
    for target in targets:
        digest.update(f"{target.kind.value}|{target.external_id}|{target.params}\n".encode())
    return digest.hexdigest()[:16]


def url_for(target: ScrapeTarget, base_url: str | None = None) -> str:
    base = (base_url or settings.BASE_URL).rstrip("/")
    kind = target.kind
    if kind in (TargetKind.AUCTION_DETAIL, TargetKind.CURRENT_DETAIL):
        return f"{base}/?currentcharactertrades/{target.external_id}"
    if kind == TargetKind.CURRENT_LIST:
        return f"{base}/?subtopic=currentcharactertrades&currentpage={target.param('page', 1)}"
    if kind == TargetKind.PAST_LIST:
        return f"{base}/?subtopic=pastcharactertrades&currentpage={target.param('page', 1)}"
    if kind == TargetKind.HIGHSCORE_PAGE:
        query = {
            "subtopic": "highscores",
            "world": target.param("world", ""),
            "beprotection": "-1",
            "category": HIGHSCORE_CATEGORIES.get(target.param("category"), "6"),
            "profession": HIGHSCORE_PROFESSIONS.get(target.param("profession"), "0"),
            "currentpage": target.param("page", 1),
        }
        return f"{base}/?{urlencode(query)}"
    if kind == TargetKind.BANS_PAGE:
        return f"{base}/bans"
    if kind == TargetKind.TRANSFERS_PAGE:
        return f"{base}/transfers"
    raise ValueError(f"No URL for target kind {kind!r}")
