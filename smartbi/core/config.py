"""
Centralised application settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # ── Metadata store ───────────────────────────────────
    metadata_database_url: str = "sqlite:///smartbi_metadata.db"

    # ── Cache ────────────────────────────────────────────
    dataset_cache_ttl: float = 600.0   # 10 minutes
    preview_cache_ttl: float = 300.0   # 5 minutes
    query_cache_ttl: float = 180.0     # 3 minutes
    cache_max_entries: int = 1024
    cache_cleanup_interval_seconds: float = 120.0

    # ── Inference / queries ──────────────────────────────
    inference_sample_rows: int = 1000
    preview_default_limit: int = 100
    query_default_limit: int = 100
    max_query_rows: int = 10_000
    query_timeout_ms: int = 10_000
    analysis_workers: int = 4

    # ── App ──────────────────────────────────────────────
    api_port: int = 8000
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
