"""Settings via pydantic-settings with LOOM_ env prefix.

Provider credentials use validation_alias to read the same unprefixed
env vars (ANTHROPIC_API_KEY, ANTHROPIC_AUTH_TOKEN) other Anthropic
tooling uses, so a single .env file works for all of them.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOOM_", env_file=".env", extra="ignore")

    log_level: str = "info"

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000
    workspace_dir: str = "/tmp/loom-workspace"
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    # Dual auth: auth_token (Bearer) takes precedence over api_key (x-api-key)
    anthropic_auth_token: str = Field("", validation_alias="ANTHROPIC_AUTH_TOKEN")

    # LLM
    model: str = "claude-sonnet-4-5-20250929"
    summary_model: str = ""  # Empty = use the session model
    max_tokens: int = 16000
    system_prompt: str = (
        "You are Loom, a coding assistant working inside the user's workspace. "
        "Use the available tools to inspect and change files, and explain what you did."
    )

    # Extended thinking
    thinking_mode: Literal["off", "manual"] = "off"
    thinking_budget: int = 10000  # budget_tokens for manual mode (min 1024)

    # Direct API settings
    max_turns: int = 50  # Max tool rounds per user turn
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 300  # seconds

    # Context window / compaction
    default_context_window: int = 200_000
    extended_context_window: int = 1_000_000  # models tagged "[1m]"
    compaction_enabled: bool = True
    compaction_fraction: float = 0.8
    session_memory_max_ratio: float = 0.5  # memory must stay under this share of threshold
    summary_recent_messages: int = 20
    session_memory_dir: str = "~/.loom/sessions"

    # Tool output
    tool_output_threshold: int = 400_000  # chars before wrapping as persisted output
    tool_preview_size: int = 2000
    keep_recent_tool_outputs: int = 3
    tool_output_max_chars: int = 1_000_000  # hard cap applied by the dispatcher

    # Retry
    network_max_retries: int = 3
    retry_base_delay: float = 1.0  # seconds, doubled per attempt

    # Permissions
    permission_mode: Literal["default", "accept_edits", "bypass", "plan"] = "default"
    permission_timeout: float = 60.0
    always_allow_tools: list[str] = Field(default_factory=list)
    always_deny_tools: list[str] = Field(default_factory=list)
    disabled_tools: list[str] = Field(default_factory=list)

    # Interactive questions
    question_timeout: float = 300.0

    # Sub-agents
    subagent_timeout: float = 600.0
    subagent_max_depth: int = 1

    # Storage
    database_url: str = "sqlite+aiosqlite:///./loom.db"

    @model_validator(mode="after")
    def _validate_settings(self) -> "Settings":
        if self.thinking_mode == "manual":
            if self.thinking_budget < 1024:
                raise ValueError("thinking_budget must be >= 1024 (API minimum)")
            if self.thinking_budget >= self.max_tokens:
                raise ValueError(
                    f"thinking_budget ({self.thinking_budget}) must be < "
                    f"max_tokens ({self.max_tokens}). Increase max_tokens."
                )
        if not 0.5 < self.compaction_fraction < 0.95:
            raise ValueError(
                f"compaction_fraction ({self.compaction_fraction}) must be between 0.5 and 0.95"
            )
        return self
