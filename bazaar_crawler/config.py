import logging
from pathlib import Path

from pydantic_settings import BaseSettings

_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Target site
    BASE_URL: str = "https://rubinot.com.br"
    WARMUP_PATH: str = "/bazaar"

    # Database: SQLite by default
    DATABASE_URL: str = "sqlite+aiosqlite:///./bazaar.db"
    DB_ECHO: bool = False

    # Local state
    DATA_DIR: Path = Path("./data")  # checkpoint files
    SESSION_DIR: Path = Path("./.sessions")  # one browser profile per pool name

    # Browser
    BROWSER_HEADLESS: bool = False  # headless sessions rarely clear the challenge
    NAVIGATION_TIMEOUT_MS: int = 60000
    CHALLENGE_TIMEOUT_SECONDS: float = 60.0
    CHALLENGE_POLL_INTERVAL_SECONDS: float = 2.0
    POST_NAVIGATION_SETTLE_MS: tuple[int, int] = (1200, 3000)

    # Session pool sizes per scan kind (clamped to 1..4)
    POOL_SIZE_AUCTION_IDS: int = 3
    POOL_SIZE_AUCTION_HISTORY: int = 2
    POOL_SIZE_CURRENT_AUCTIONS: int = 3
    POOL_SIZE_HIGHSCORES: int = 1
    POOL_SIZE_BANS: int = 1
    POOL_SIZE_TRANSFERS: int = 1

    # Rate limiting: name -> [low_ms, high_ms)
    RATE_PROFILES: dict[str, tuple[int, int]] = {
        "fast": (500, 1000),
        "normal": (2000, 4000),
        "slow": (5000, 10000),
    }
    DEFAULT_RATE_PROFILE: str = "normal"
    LAUNCH_STAGGER_MS: int = 300

    # Scanning
    CONSECUTIVE_NOT_FOUND_LIMIT: int = 100
    ID_SCAN_WINDOW: int = 10000
    ID_SCAN_DEFAULT_START: int = 1
    SKIP_FLUSH_INTERVAL: int = 50
    MAX_TARGET_ATTEMPTS: int = 5
    HIGHSCORE_MAX_PAGES: int = 20
    LIST_MAX_PAGES: int = 500

    # Escalation
    ESCALATION_ERROR_THRESHOLD: int = 3  # consecutive hard failures before a replace
    ESCALATION_REPLACE_ROUNDS: int = 2  # replace rounds before a full restart
    REPLACE_COOLDOWN_SECONDS: float = 15.0
    RESTART_COOLDOWN_SECONDS: float = 30.0

    # Logging
    LOG_FORMAT: str = "text"  # "json" for log shipping, "text" for terminals
    LOG_LEVEL: str = "INFO"

    # Metrics
    METRICS_ENABLED: bool = True
    METRICS_PORT: int = 0  # 0 disables the HTTP exporter

    model_config = {"env_prefix": "CRAWLER_"}

    def model_post_init(self, __context) -> None:
        low, high = self.POST_NAVIGATION_SETTLE_MS
        if high <= low:
            _logger.warning(
                "POST_NAVIGATION_SETTLE_MS has an empty range (%d, %d), using %d ms flat",
                low,
                high,
                low,
            )
            object.__setattr__(self, "POST_NAVIGATION_SETTLE_MS", (low, low + 1))

    def pool_size_for(self, kind: str) -> int:
        """Default session pool size for a scan kind."""
        size = getattr(self, f"POOL_SIZE_{kind.upper().replace('-', '_')}", 1)
        return max(1, min(int(size), 4))


settings = Settings()
