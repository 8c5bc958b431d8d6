from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


SERVICE_ROOT = Path(__file__).resolve().parents[1]

load_dotenv(SERVICE_ROOT / ".env", override=False)


def _default_concurrency() -> int:
    cpu = os.cpu_count() or 2
    return max(1, min(4, cpu // 2 if cpu > 2 else 1))


class SolidGenSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SOLIDGEN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = "solidgen-service"
    host: str = "0.0.0.0"
    port: int = 8010
    log_level: str = "INFO"

    # LLM API keys
    anthropic_api_key: str = Field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY", ""))
    gemini_api_key: str = Field(default_factory=lambda: os.getenv("GEMINI_API_KEY", ""))
    claude_model: str = Field(default_factory=lambda: os.getenv("CLAUDE_MODEL", "claude-sonnet-4-6"))
    gemini_model: str = Field(default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-3-pro-preview"))
    default_llm: str = "claude"
    max_tokens: int = Field(default=16000, ge=1024, le=128000)
    max_overload_retries: int = Field(default=3, ge=1, le=10)
    overload_backoff_seconds: float = Field(default=15.0, ge=0.0, le=300.0)

    # Remote generation service (llm_name="remote")
    remote_generate_url: str | None = None
    remote_api_key: str | None = None

    # Retry loop
    max_attempts: int = Field(default=3, ge=1, le=10)
    max_history_turns: int = Field(default=20, ge=2, le=500)

    # Sandbox
    cache_size: int = Field(default=64, ge=1, le=10000)
    sandbox_max_steps: int = Field(default=200_000, ge=1000, le=100_000_000)
    sandbox_timeout_seconds: float = Field(default=20.0, ge=0.5, le=600.0)

    # Mesh
    crease_angle_degrees: float = Field(default=30.0, ge=0.0, le=180.0)

    # Images
    max_image_bytes: int = Field(default=5 * 1024 * 1024, ge=1024, le=100 * 1024 * 1024)
    max_image_dimension: int = Field(default=1024, ge=64, le=8192)

    # Storage (None → in-memory conversations)
    storage_dir: Path | None = Field(default_factory=lambda: SERVICE_ROOT / "data")
    conversations_subdir: str = "conversations"

    # Concurrency
    max_concurrent_jobs: int = Field(default_factory=_default_concurrency, ge=1, le=32)
    max_queue_size: int = Field(default=64, ge=1, le=10000)
    sync_wait_timeout_seconds: int = Field(default=600, ge=60, le=3600)

    # Job lifecycle
    finished_job_ttl_seconds: int = Field(default=3600, ge=60, le=172800)
    cleanup_interval_seconds: int = Field(default=30, ge=5, le=3600)
    max_job_records: int = Field(default=2000, ge=100, le=200000)

    # Auth
    api_key: str | None = None

    @field_validator("default_llm", mode="after")
    @classmethod
    def _check_default_llm(cls, value: str) -> str:
        if value not in ("claude", "claude-sonnet", "claude-opus", "gemini", "remote"):
            raise ValueError("default_llm must be one of: claude, claude-sonnet, claude-opus, gemini, remote")
        return value

    @field_validator("storage_dir", mode="after")
    @classmethod
    def _resolve_storage(cls, value: Path | None) -> Path | None:
        return value.expanduser().resolve() if value is not None else None

    @property
    def conversations_dir(self) -> Path | None:
        if self.storage_dir is None:
            return None
        return self.storage_dir / self.conversations_subdir

    @property
    def claude_available(self) -> bool:
        return bool(self.anthropic_api_key)

    @property
    def gemini_available(self) -> bool:
        return bool(self.gemini_api_key)


settings = SolidGenSettings()
