from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database ────────────────────────────────
    DATABASE_URL: str = "sqlite+aiosqlite:///./riskintel.db"

    # ── Fetching ────────────────────────────────
    USER_AGENT: str = "Mozilla/5.0 (compatible; WebsiteRiskIntel/1.0)"
    REQUEST_TIMEOUT_S: float = 10.0
    MAX_BODY_BYTES: int = 512 * 1024
    MAX_REDIRECTS: int = 10

    # Crawl defaults, used when no authorized-domain row overrides them
    DEFAULT_MAX_PAGES: int = 50
    DEFAULT_CRAWL_DELAY_MS: int = 1000

    # Stage B deadline for the risk-intelligence task
    RISK_INTEL_TIMEOUT_S: float = 90.0

    # ── Headless browser ────────────────────────
    BROWSER_FALLBACK_ENABLED: bool = True
    PLAYWRIGHT_CONCURRENCY: int = 1
    PLAYWRIGHT_ACQUIRE_TIMEOUT_S: float = 30.0
    BROWSER_TIMEOUT_MS: int = 20000

    # ── Gemini (optional) ───────────────────────
    GEMINI_API_KEY: Optional[str] = None
    GEMINI_MODEL: str = "gemini-2.5-flash"

    # ── API ─────────────────────────────────────
    CORS_ORIGINS: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = str(Path(__file__).resolve().parents[1] / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"

    def cors_allow_origins(self) -> list[str]:
        raw = (self.CORS_ORIGINS or "").strip()
        if not raw:
            return ["http://localhost:3000"]
        return [o.strip() for o in raw.split(",") if o.strip()]


settings = Settings()
