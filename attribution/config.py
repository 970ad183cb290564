from pathlib import Path
from urllib.parse import urlparse

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis settings (required - startup fails without them)
    UPSTASH_REDIS_REST_URL: str
    UPSTASH_REDIS_REST_TOKEN: str
    REDIS_MAX_CONNECTIONS: int = 20

    # IPinfo settings
    IPINFO_TOKEN: str | None = None
    GEO_API_BASE_URL: str = "https://ipinfo.io"
    GEO_REQUEST_TIMEOUT_SECONDS: float = 3.0
    GEO_CALL_BUDGET: int = 10
    GEO_CACHE_TTL_SECONDS: int = 86400  # 24 hours
    GEO_FAILURE_TTL_SECONDS: int = 3600  # 1 hour
    GEO_ACCEPTANCE_SCORE: int = 60

    # =================================================================
    # INDEX BUILDER SETTINGS
    # =================================================================
    INDEX_KEY_PREFIX: str = "attribution_index"
    INDEX_ENTRY_CAPACITY: int = 50
    INDEX_TIME_BUCKET_CAPACITY: int = 500
    INDEX_TTL_SECONDS: int = 2592000  # 30 days
    INDEX_VISIT_PATTERNS: list[str] = ["pageview:*", "attribution_data_chunk:*"]
    INDEX_SCAN_PAGE_SIZE: int = 1000
    INDEX_VERIFICATION_PATTERNS: list[str] = []
    INDEX_VERIFICATION_PAGE_SIZE: int = 25
    INDEX_VERIFICATION_MAX_PAGES: int = 50
    INDEX_PROGRESS_KEY: str = "attribution_index_build:progress"
    INDEX_PROGRESS_TTL_SECONDS: int = 7200  # 2 hours
    INDEX_REBUILD_INTERVAL_SECONDS: int = 21600  # 6 hours after the last build completed
    INDEX_BUILD_BUDGET_SECONDS: float = 25.0

    # =================================================================
    # RESOLVER / RECOVERY SETTINGS
    # =================================================================
    ATTRIBUTION_MODEL: str = "first_touch"
    ATTRIBUTION_LOOKBACK_DAYS: int = 14
    ATTRIBUTION_TIME_DECAY_HALF_LIFE_HOURS: float = 168.0  # 7 days
    CONCURRENCY_LIMIT: int = 25
    CONVERSION_PATTERN: str = "conversions:*"
    RECOVERY_BUDGET_SECONDS: float = 25.0
    RECOVERY_BATCH_SIZE: int = 10
    RECOVERY_SCAN_PAGE_SIZE: int = 200

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def redis_host(self) -> str:
        """
        Extract the Upstash host from the REST URL, e.g.
        https://eu1-sharp-dog-12345.upstash.io -> eu1-sharp-dog-12345.upstash.io
        """
        rest_url = self.UPSTASH_REDIS_REST_URL.strip()
        parsed = urlparse(rest_url)
        host = parsed.hostname
        if not host:
            host = urlparse(f"https://{rest_url}").hostname
        if not host:
            raise ValueError("UPSTASH_REDIS_REST_URL does not include a valid hostname")
        return host

    def get_index_build_config(self) -> dict:
        """
        Get index builder configuration.
        Development runs use smaller pages so partial runs are easy to observe.
        """
        config = {
            "key_prefix": self.INDEX_KEY_PREFIX,
            "capacity": self.INDEX_ENTRY_CAPACITY,
            "time_bucket_capacity": self.INDEX_TIME_BUCKET_CAPACITY,
            "ttl_s": self.INDEX_TTL_SECONDS,
            "visit_patterns": list(self.INDEX_VISIT_PATTERNS),
            "page_size": self.INDEX_SCAN_PAGE_SIZE,
            "verification_patterns": list(self.INDEX_VERIFICATION_PATTERNS),
            "verification_page_size": self.INDEX_VERIFICATION_PAGE_SIZE,
            "verification_max_pages": self.INDEX_VERIFICATION_MAX_PAGES,
            "progress_key": self.INDEX_PROGRESS_KEY,
            "progress_ttl_s": self.INDEX_PROGRESS_TTL_SECONDS,
            "rebuild_interval_s": self.INDEX_REBUILD_INTERVAL_SECONDS,
        }

        if self.environment == "development":
            config.update({"page_size": min(self.INDEX_SCAN_PAGE_SIZE, 250)})

        return config


settings = Settings()
