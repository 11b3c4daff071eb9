"""METRIQ — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Connection Broker (proxy for authenticated third-party calls) ──
    proxy_base_url: str = "https://api.nango.dev"
    proxy_secret_key: str = ""
    fetch_timeout_seconds: float = 30.0
    fetch_max_retries: int = 3

    # ── Database ──
    database_url: str = ""

    # ── Code-Generation Providers ──
    anthropic_api_key: Optional[str] = None
    sarvam_api_key: Optional[str] = None
    default_ai_provider: str = "claude"  # claude | sarvam
    codegen_model: str = "claude-sonnet-4-20250514"
    codegen_max_tokens: int = 4000

    # ── Sandbox ──
    sandbox_timeout_seconds: float = 5.0
    sandbox_memory_limit_mb: int = 256
    sandbox_cpu_seconds: int = 5

    # ── Pipeline ──
    chart_data_point_limit: int = 1000
    chart_sample_size: int = 30
    prompt_sample_max_chars: int = 20000
    created_window_seconds: float = 5.0
    # A refresh that has not advanced for this long is treated as abandoned
    refresh_stale_after_seconds: float = 600.0

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    poll_interval_minutes: int = 15
    poll_batch_size: int = 50

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Read-only serverless filesystems only allow /tmp
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/metriq.db"
        return "sqlite:///./metriq.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


settings = Settings()
