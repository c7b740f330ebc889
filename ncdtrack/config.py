"""NCDTrack — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    reconcile_hour: int = 3  # Nightly district reconcile at 3 AM

    # ── Roster / Seeding ──
    roster_path: Optional[str] = None
    seed_on_startup: bool = False
    excluded_facility_types: List[str] = ["15", "16"]  # Administrative, non-reporting

    # ── Derived fields ──
    percentage_precision: int = 2
    max_counter: int = 10**12  # Larger submitted counts are treated as invalid

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Vercel has a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/ncdtrack.db"
        return "sqlite:///./ncdtrack.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
