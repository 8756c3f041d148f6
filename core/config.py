"""Runtime configuration.

Settings are read from environment variables, with a `.env` file at the
repository root loaded first if present.

Usage:
    from core.config import get_settings

    settings = get_settings()
    client = LogisticsBillingClient(settings.api)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from core.retry import RetryConfig

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_DB_PATH = REPO_ROOT / "billing_ledger.db"

env_path = REPO_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class ApiSettings:
    """Upstream billing API connection settings."""
    base_url: str = "https://api.shipbob.com"
    api_version: str = "2025-07"
    token: str = ""
    page_size: int = 250  # server caps larger requests anyway
    reference_id_batch_size: int = 100
    request_timeout_seconds: int = 30
    retry: RetryConfig = field(default_factory=RetryConfig)

    def get_base_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.api_version}"


@dataclass
class FetchSettings:
    """Exhaustive fetch orchestration settings."""
    max_pages: int = 20
    observed_cap: int = 250
    max_concurrency: int = 4
    always_partition: bool = False
    date_bucket_days: Optional[int] = None


@dataclass
class AttributionSettings:
    """House accounts for system-level fees.

    system_fee_accounts maps an upstream fee type to the client id of the
    house account that absorbs it.
    """
    payments_house_client_id: Optional[str] = None
    costs_house_client_id: Optional[str] = None
    max_workers: int = 1
    batch_size: int = 500

    @property
    def system_fee_accounts(self) -> Dict[str, str]:
        accounts = {}
        if self.payments_house_client_id:
            accounts["Payment"] = self.payments_house_client_id
        if self.costs_house_client_id:
            accounts["Credit Card Processing Fee"] = self.costs_house_client_id
        return accounts

    @property
    def house_client_ids(self) -> set:
        return set(self.system_fee_accounts.values())


@dataclass
class Settings:
    """Top-level settings container."""
    api: ApiSettings = field(default_factory=ApiSettings)
    fetch: FetchSettings = field(default_factory=FetchSettings)
    attribution: AttributionSettings = field(default_factory=AttributionSettings)
    db_path: Path = DEFAULT_DB_PATH

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        retry = RetryConfig(
            max_attempts=_env_int("BILLING_RETRY_MAX_ATTEMPTS", 5),
            base_delay=_env_float("BILLING_RETRY_BASE_DELAY", 1.0),
            max_delay=_env_float("BILLING_RETRY_MAX_DELAY", 60.0),
        )
        api = ApiSettings(
            base_url=os.getenv("BILLING_API_BASE_URL", "https://api.shipbob.com"),
            api_version=os.getenv("BILLING_API_VERSION", "2025-07"),
            token=os.getenv("BILLING_API_TOKEN", ""),
            page_size=_env_int("BILLING_PAGE_SIZE", 250),
            request_timeout_seconds=_env_int("BILLING_REQUEST_TIMEOUT", 30),
            retry=retry,
        )
        date_bucket_days = os.getenv("BILLING_DATE_BUCKET_DAYS")
        fetch = FetchSettings(
            max_pages=_env_int("BILLING_MAX_PAGES", 20),
            observed_cap=_env_int("BILLING_OBSERVED_CAP", 250),
            max_concurrency=_env_int("BILLING_MAX_CONCURRENCY", 4),
            always_partition=os.getenv("BILLING_ALWAYS_PARTITION", "").lower() in ("1", "true", "yes"),
            date_bucket_days=int(date_bucket_days) if date_bucket_days else None,
        )
        attribution = AttributionSettings(
            payments_house_client_id=os.getenv("BILLING_PAYMENTS_HOUSE_CLIENT_ID") or None,
            costs_house_client_id=os.getenv("BILLING_COSTS_HOUSE_CLIENT_ID") or None,
            max_workers=_env_int("BILLING_ATTRIBUTION_WORKERS", 1),
        )
        db_path = os.getenv("BILLING_DB_PATH")
        return cls(
            api=api,
            fetch=fetch,
            attribution=attribution,
            db_path=Path(db_path) if db_path else DEFAULT_DB_PATH,
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get process-wide settings (loaded once from the environment)."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings
