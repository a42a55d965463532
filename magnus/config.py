"""Settings via pydantic-settings with MAGNUS_ env prefix.

Provider connection fields use validation_alias to read the same unprefixed
env vars (OPENAI_API_BASE, OPENAI_API_KEY, OPENAI_MODEL) that other
OpenAI-compatible tooling uses, so a single .env file can be shared.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MAGNUS_", env_file=".env", extra="ignore")

    # Provider: unprefixed aliases match the OpenAI-compatible convention
    api_base_url: str = Field("https://api.openai.com/v1", validation_alias="OPENAI_API_BASE")
    api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    model: str = Field("gpt-4o-mini", validation_alias="OPENAI_MODEL")

    # LLM
    max_tokens: int = 8192
    temperature: float = 0.0
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Orchestration loop
    max_iterations: int = Field(10, ge=1, le=100)
    tool_call_format: Literal["xml", "json"] = "xml"

    # Context-size management
    compaction_enabled: bool = True
    compaction_threshold: int = 24000  # estimated tokens
    compaction_split_ratio: float = 0.75  # older share that gets summarized
    compression_ratio: Literal["light", "medium", "heavy"] = "medium"
    summary_max_chars: int = Field(1000, ge=50, le=8000)
    summary_temperature: float = 0.3

    # Built-in tools
    workspace_dir: str = "."
    rules_file: str = "MAGNUS.md"
    shell_timeout: int = 30  # seconds

    # Runtime
    log_level: str = "info"
    host: str = "127.0.0.1"
    port: int = 8000

    @model_validator(mode="after")
    def _validate_split_ratio(self) -> "Settings":
        if not 0.0 < self.compaction_split_ratio < 1.0:
            raise ValueError(
                f"compaction_split_ratio ({self.compaction_split_ratio}) must be "
                "strictly between 0 and 1"
            )
        return self
