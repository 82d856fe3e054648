"""Settings via pydantic-settings with PARLEY_ env prefix.

Vendor API keys use validation_alias to read the same unprefixed env vars
(ANTHROPIC_API_KEY, OPENAI_API_KEY) that the vendor SDKs and CLIs use, so a
single .env file drives everything.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_DB_PATH = Path.home() / ".parley" / "parley.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PARLEY_", env_file=".env", extra="ignore")

    environment: Literal["local", "development", "production"] = "local"
    log_level: str = "info"

    # Runtime
    host: str = "127.0.0.1"
    port: int = 3000

    # Storage (conversations, patch log, request cache)
    db_url: str = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"
    data_dir_name: str = ".parley"  # per-project directory under the project root

    # Providers
    default_provider: Literal["anthropic", "openai"] = "anthropic"
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    anthropic_model: str = "claude-sonnet-4-5-20250514"
    openai_model: str = "gpt-4o"
    anthropic_base_url: str = "https://api.anthropic.com"
    openai_base_url: str = "https://api.openai.com/v1"

    # Direct API settings
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    request_deadline: float = 300.0  # hard ceiling per transport call, seconds

    # Retry / cache
    max_speak_retries: int = 3
    speak_retry_delay: float = 1.0  # seconds between validation retries
    initial_backoff: float = 1.0  # first 5xx backoff, doubled per retry
    request_cache_ttl: int = 3 * 24 * 60 * 60  # 3 days, seconds
    ignore_llm_request_cache: bool = False

    # Conversation
    temperature: float = 0.7
    max_tokens: int = 4096
    max_turns: int = 5
    system_prompt: str = "You are an AI assistant helping with code and project management."

    # Patching / project index
    patch_fuzz_factor: int = 2
    ctags_enabled: bool = True
    ctags_timeout: int = 30  # seconds

    @model_validator(mode="after")
    def _validate_budgets(self) -> "Settings":
        if self.max_speak_retries < 1:
            raise ValueError("max_speak_retries must be >= 1")
        if self.max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        if self.patch_fuzz_factor < 0:
            raise ValueError("patch_fuzz_factor must be >= 0")
        return self

    @property
    def show_error_details(self) -> bool:
        return self.environment in ("local", "development")
