from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from storybible.llm.providers import LLMProviderType, get_default_model


def _default_repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


class LLMProviderEnum(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STORYBIBLE_", extra="ignore")

    repo_root: Path = Field(default_factory=_default_repo_root)
    data_dir: Path | None = None

    # Offline mode: agents talk to a provider that answers with empty JSON
    dummy_mode: bool = False

    # LLM Provider Configuration
    llm_provider: LLMProviderEnum = LLMProviderEnum.OPENAI
    llm_model: str | None = None
    # OpenAI-compatible endpoint (Azure, vLLM, Ollama); None means api.openai.com
    openai_base_url: str | None = None

    # Pipeline timeouts (seconds). Exceeding one is a failed transition.
    stage_timeout_s: float = 300.0
    agent_timeout_s: float = 180.0

    # Input validation
    max_document_chars: int = 500_000

    # Session lifecycle
    session_idle_horizon_s: float = 3600.0
    sweep_interval_s: float = 60.0

    # Push channel
    subscriber_queue_size: int = 1000

    # Consumer-side poll fallback
    poll_grace_s: float = 5.0
    poll_interval_s: float = 3.0

    # Cross-category deduplication policy
    dedup_precedence: list[str] = Field(
        default_factory=lambda: ["character", "item", "location", "faction", "lore"]
    )
    dedup_partial_matches: bool = False

    # Durable result archive (SQLite)
    archive_results: bool = True

    # API rate limiting
    rate_limit_enabled: bool = True
    create_rate_limit: str = "10/minute"

    def get_default_model_for_provider(self) -> str:
        """Get the default model name for the configured provider."""
        return get_default_model(LLMProviderType(self.llm_provider.value))

    @property
    def resolved_llm_model(self) -> str:
        return self.llm_model or self.get_default_model_for_provider()

    @property
    def resolved_data_dir(self) -> Path:
        return self.data_dir or (self.repo_root / "data")

    @property
    def db_path(self) -> Path:
        return self.resolved_data_dir / "index" / "results.sqlite3"


# Singleton instance - import this instead of creating Settings()
settings = Settings()
