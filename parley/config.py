"""Settings via pydantic-settings with PARLEY_ env prefix.

Credential fields use validation_alias to read the vendors' own unprefixed
env vars (ANTHROPIC_API_KEY, OPENAI_API_KEY, ...), so an existing shell
environment works without duplicating keys.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["anthropic", "openai", "vertex"]

DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-sonnet-4-5",
    "openai": "gpt-5",
    "vertex": "gemini-2.5-pro",
}

# Unified thinking setting: a named level, a numeric budget, or off
ThinkingSetting = bool | int | float | str | None


def _coerce_numeric(value: object) -> object:
    """Env vars arrive as strings; turn "4096" into 4096 so budgets stay numeric."""
    if isinstance(value, str):
        stripped = value.strip()
        try:
            return int(stripped)
        except ValueError:
            pass
        try:
            return float(stripped)
        except ValueError:
            return value
    return value


class ProviderParameters(BaseModel):
    """Validated per-request parameters handed to a provider adapter."""

    model_config = ConfigDict(extra="ignore")

    model: str
    max_tokens: int = 4096
    temperature: float | None = 0.7
    thinking: ThinkingSetting = None
    thinking_budget: int | float | None = None  # Vendor-native override (budget vendors)
    reasoning: str | None = None  # Vendor-native override (effort vendors)
    reasoning_summary: str = "auto"
    cache_retention: Literal["short", "long", "none"] = "short"
    base_url: str | None = None

    # Vertex AI
    project_id: str | None = None
    location: str = "global"

    # Credentials
    api_key: str = Field("", repr=False)
    service_account: str = Field("", repr=False)

    @field_validator("thinking", mode="before")
    @classmethod
    def _coerce_thinking(cls, value: object) -> object:
        return _coerce_numeric(value)


class AutopilotSettings(BaseModel):
    """The autopilot group. Its presence alone enables autopilot."""

    enabled: bool = True
    max_turns: int = Field(100, ge=1)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PARLEY_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # LLM
    provider: ProviderName = "anthropic"
    model: str = ""  # Empty means the vendor default from DEFAULT_MODELS
    max_tokens: int = 4096
    temperature: float | None = 0.7
    system_prompt: str = ""

    # Thinking / reasoning
    thinking: ThinkingSetting = None  # none | low | medium | high | <budget>
    thinking_budget: int | float | None = None
    reasoning: str | None = None
    reasoning_summary: str = "auto"

    # Prompt caching
    cache_retention: Literal["short", "long", "none"] = "short"

    # Credentials
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str = Field("", validation_alias="OPENAI_API_KEY")
    vertex_access_token: str = Field("", validation_alias="VERTEX_AI_ACCESS_TOKEN")
    vertex_service_account: str = Field("", validation_alias="VERTEX_SERVICE_ACCOUNT")

    # Vertex AI
    vertex_project_id: str = ""
    vertex_location: str = "global"

    # Transport
    api_base_url: str | None = None
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds

    # Autopilot (None disables the whole group)
    autopilot: AutopilotSettings | None = Field(default_factory=AutopilotSettings)

    log_level: str = "info"

    @field_validator("thinking", mode="before")
    @classmethod
    def _coerce_thinking(cls, value: object) -> object:
        return _coerce_numeric(value)

    @model_validator(mode="after")
    def _validate_thinking(self) -> "Settings":
        if self.provider == "anthropic" and self.thinking_budget:
            if self.thinking_budget >= self.max_tokens:
                raise ValueError(
                    f"thinking_budget ({self.thinking_budget}) must be < "
                    f"max_tokens ({self.max_tokens}). Increase max_tokens."
                )
        return self

    @property
    def resolved_model(self) -> str:
        return self.model or DEFAULT_MODELS[self.provider]

    def provider_parameters(self) -> ProviderParameters:
        """Build the adapter parameters for the configured provider."""
        credentials = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "vertex": self.vertex_access_token,
        }
        return ProviderParameters(
            model=self.resolved_model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            thinking=self.thinking,
            thinking_budget=self.thinking_budget,
            reasoning=self.reasoning,
            reasoning_summary=self.reasoning_summary,
            cache_retention=self.cache_retention,
            base_url=self.api_base_url,
            project_id=self.vertex_project_id or None,
            location=self.vertex_location,
            api_key=credentials[self.provider],
            service_account=self.vertex_service_account,
        )
