"""Application configuration loaded from environment variables.

Uses ``pydantic-settings`` for automatic env-var loading, type coercion,
and ``.env`` file support.  Missing API keys are not fatal at import;
the inference layer raises ``ConfigurationError`` on first use instead.
"""

VERSION = "0.1.0"

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ReasoningEffort = Literal["low", "medium", "high"]


class Settings(BaseSettings):
    """Application settings: sourced from environment / ``.env`` file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # optional rotating plain-text log

    ANTHROPIC_API_KEY: str = ""
    OPENAI_API_KEY: str = ""
    LLM_PROVIDER: str = ""  # "openai" | "anthropic" | auto

    # -------------------------------------------------------------------------
    # Model tier: controls which models are used across ALL operations.
    #
    #   "haiku"  - cheapest, use while iterating on prompts
    #   "sonnet" - balanced default
    #   "opus"   - highest quality for code-writing operations
    #
    # Per-role overrides below still take precedence when set explicitly.
    # -------------------------------------------------------------------------
    MODEL_TIER: str = "sonnet"  # "haiku" | "sonnet" | "opus"

    # Hard override for every model call (cost-safe testing).  Blank = off.
    FORCE_MODEL: str = ""

    LLM_PLANNER_MODEL: str = ""
    LLM_BUILDER_MODEL: str = ""
    LLM_REVIEWER_MODEL: str = ""
    LLM_FIXER_MODEL: str = ""
    LLM_CONVERSATION_MODEL: str = ""
    OPENAI_MODEL: str = "gpt-4o"

    @model_validator(mode="after")
    def _apply_force_model(self) -> "Settings":
        """If FORCE_MODEL is set, overwrite every per-role model with it."""
        if self.FORCE_MODEL:
            self.LLM_PLANNER_MODEL = self.FORCE_MODEL
            self.LLM_BUILDER_MODEL = self.FORCE_MODEL
            self.LLM_REVIEWER_MODEL = self.FORCE_MODEL
            self.LLM_FIXER_MODEL = self.FORCE_MODEL
            self.LLM_CONVERSATION_MODEL = self.FORCE_MODEL
        return self

    # Extended-thinking token budgets per reasoning tier (0 disables thinking)
    THINKING_BUDGET_LOW: int = 0
    THINKING_BUDGET_MEDIUM: int = 4096
    THINKING_BUDGET_HIGH: int = 16384

    # Transport retries for transient provider errors (429 / 5xx / timeouts)
    INFERENCE_MAX_RETRIES: int = Field(default=4, ge=0)

    # Conversation history: compaction triggers at 80 % of this cap
    MAX_LLM_MESSAGES: int = Field(default=100, ge=5)
    MAX_TOOL_ROUNDS: int = Field(default=5, ge=1)

    # Realtime per-file fixing during PhaseImplementation
    REALTIME_CODE_FIXER_ENABLED: bool = True
    REALTIME_FIX_MIN_LINES: int = 50  # files strictly longer than this get fixed
    REALTIME_FIX_RETRY_LIMIT: int = 3

    FILE_REGENERATION_RETRY_LIMIT: int = 5
    SCREENSHOT_ANALYSIS_RETRY_LIMIT: int = 3
    SURGICAL_MAX_CHANGED_LINES: int = 20  # per reported issue

    # Broken-image safety net
    IMAGE_VALIDATION_BATCH_SIZE: int = Field(default=5, ge=1)
    IMAGE_VALIDATION_TIMEOUT_S: float = 5.0

    # Streaming delivery granularity (characters)
    PHASE_STREAM_CHUNK_SIZE: int = 256
    CONVERSATION_STREAM_CHUNK_SIZE: int = 64


settings = Settings()

# ---------------------------------------------------------------------------
# Model tier resolution
# ---------------------------------------------------------------------------
# Maps tier name → model ID for each role.  "opus" only upgrades the roles
# that write code; planning and conversation stay on Sonnet.
_TIER_MAP: dict[str, dict[str, str]] = {
    "haiku": {
        "planner":      "claude-haiku-4-5",
        "builder":      "claude-haiku-4-5",
        "reviewer":     "claude-haiku-4-5",
        "fixer":        "claude-haiku-4-5",
        "conversation": "claude-haiku-4-5",
    },
    "sonnet": {
        "planner":      "claude-sonnet-4-6",
        "builder":      "claude-sonnet-4-6",
        "reviewer":     "claude-sonnet-4-6",
        "fixer":        "claude-sonnet-4-6",
        "conversation": "claude-sonnet-4-6",
    },
    "opus": {
        "planner":      "claude-sonnet-4-6",
        "builder":      "claude-opus-4-6",
        "reviewer":     "claude-sonnet-4-6",
        "fixer":        "claude-opus-4-6",
        "conversation": "claude-sonnet-4-6",
    },
}

_ROLE_OVERRIDES: dict[str, str] = {
    "planner":      "LLM_PLANNER_MODEL",
    "builder":      "LLM_BUILDER_MODEL",
    "reviewer":     "LLM_REVIEWER_MODEL",
    "fixer":        "LLM_FIXER_MODEL",
    "conversation": "LLM_CONVERSATION_MODEL",
}


def get_model_for_role(role: str) -> str:
    """Return the resolved model ID for a role.

    Resolution order:
      1. FORCE_MODEL (absolute override: beats everything)
      2. Per-role env var (LLM_BUILDER_MODEL etc.)
      3. MODEL_TIER tier default
    """
    if settings.FORCE_MODEL:
        return settings.FORCE_MODEL
    override_attr = _ROLE_OVERRIDES.get(role)
    if override_attr:
        override = getattr(settings, override_attr, "")
        if override:
            return override
    tier_models = _TIER_MAP.get(settings.MODEL_TIER, _TIER_MAP["sonnet"])
    return tier_models.get(role, "claude-sonnet-4-6")


def get_thinking_budget(model: str, effort: ReasoningEffort | None) -> int:
    """Return the extended-thinking budget for *effort* on *model*.

    Haiku does not support extended thinking: always returns 0.
    """
    if effort is None or "haiku" in model.lower():
        return 0
    return {
        "low": settings.THINKING_BUDGET_LOW,
        "medium": settings.THINKING_BUDGET_MEDIUM,
        "high": settings.THINKING_BUDGET_HIGH,
    }[effort]


# ---------------------------------------------------------------------------
# Per-action inference configuration
# ---------------------------------------------------------------------------


class AgentActionConfig(BaseModel):
    """How one operation calls the model."""

    model_config = ConfigDict(frozen=True)

    role: str
    reasoning_effort: ReasoningEffort = "medium"
    max_tokens: int = 8192


AGENT_CONFIG: dict[str, AgentActionConfig] = {
    "phase_generation": AgentActionConfig(role="planner", reasoning_effort="medium", max_tokens=8192),
    "phase_implementation": AgentActionConfig(role="builder", reasoning_effort="low", max_tokens=32_768),
    "first_phase_implementation": AgentActionConfig(role="builder", reasoning_effort="medium", max_tokens=32_768),
    "code_review": AgentActionConfig(role="reviewer", reasoning_effort="medium", max_tokens=8192),
    "file_regeneration": AgentActionConfig(role="fixer", reasoning_effort="low", max_tokens=16_384),
    "realtime_code_fixer": AgentActionConfig(role="fixer", reasoning_effort="low", max_tokens=16_384),
    "fast_code_fixer": AgentActionConfig(role="fixer", reasoning_effort="low", max_tokens=32_768),
    "screenshot_analysis": AgentActionConfig(role="reviewer", reasoning_effort="medium", max_tokens=4096),
    "conversational_response": AgentActionConfig(role="conversation", reasoning_effort="low", max_tokens=4096),
    "readme_generation": AgentActionConfig(role="builder", reasoning_effort="low", max_tokens=4096),
}


def get_agent_config(action: str) -> AgentActionConfig:
    """Return the configuration for *action*; unknown actions raise ``KeyError``."""
    return AGENT_CONFIG[action]
