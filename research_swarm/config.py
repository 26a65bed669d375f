# =============================================================================
# Application Configuration — Pydantic Settings
# =============================================================================
#
# All tunables for the research swarm live here: provider credentials,
# per-role model choices, retry policy, and the budgets of every bounded
# loop in the pipeline (research pivots, debate rounds, remediation).
#
# HOW IT WORKS:
# Pydantic Settings loads values in this priority order (highest first):
#   1. Environment variables (e.g., `LLM_PROVIDER=...`)
#   2. Values from the .env file
#   3. Default values defined below
#
# USAGE:
#   from research_swarm.config import settings
#   print(settings.max_debate_rounds)
# =============================================================================

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Defaults reproduce the loop budgets and retry policy of the
    research pipeline; only the API key has to be supplied.
    """

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    app_name: str = "Research Swarm"
    app_version: str = "0.1.0"
    debug: bool = True
    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # LLM Provider
    # -------------------------------------------------------------------------
    #   - "anthropic": Claude via native Anthropic SDK
    #   - "openai_compatible": any OpenAI-compatible API (OpenAI, DeepSeek,
    #     Qwen, GLM, Kimi, ...)
    #
    # LLM_API_KEY overrides the provider-specific key when set.
    # -------------------------------------------------------------------------
    llm_provider: str = "anthropic"  # "anthropic" or "openai_compatible"
    llm_base_url: str | None = None  # Only needed for openai_compatible
    llm_api_key: str | None = None
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    llm_max_tokens: int = 8192

    # -------------------------------------------------------------------------
    # Models per Role
    # -------------------------------------------------------------------------
    # lead_model:       planner, advisor, research evaluator, synthesizer,
    #                   output reviewer, arbitrator
    # fast_model:       intent classifier, clarifier, quick-answer synthesis
    # expert_model:     one chat session per uploaded document
    # web_expert_model: the standing Web Expert and URL Expert sessions
    # -------------------------------------------------------------------------
    lead_model: str = "claude-sonnet-4-6"
    fast_model: str = "claude-haiku-4-5"
    expert_model: str = "claude-sonnet-4-6"
    web_expert_model: str = "claude-sonnet-4-6"

    # Server-side web search for the Web/URL experts (Anthropic only)
    web_search_enabled: bool = True
    web_search_max_uses: int = 5

    # -------------------------------------------------------------------------
    # Extended Thinking Budgets (tokens, 0 = disabled)
    # -------------------------------------------------------------------------
    expert_thinking_budget: int = 0
    evaluator_thinking_budget: int = 0
    synthesis_thinking_budget_deep: int = 0
    synthesis_thinking_budget_simple: int = 0

    # -------------------------------------------------------------------------
    # Retry Envelope
    # -------------------------------------------------------------------------
    # Rate-limit / overload failures back off exponentially with jitter:
    #   delay = base * 2^attempt + uniform(0, jitter)
    # Every other failure is raised immediately.
    # -------------------------------------------------------------------------
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    retry_jitter_seconds: float = 1.0
    briefing_retry_base_delay_seconds: float = 3.0
    synthesis_retry_base_delay_seconds: float = 5.0

    # -------------------------------------------------------------------------
    # Loop Budgets
    # -------------------------------------------------------------------------
    # max_research_pivots: extra research rounds after the first one
    #   (4 → at most 5 execution rounds per research phase)
    # max_debate_rounds: reviewer/arbitrator round-trips before the
    #   system forces approval
    # max_remediation_attempts: shared budget for incremental fixes and
    #   full restarts within one request
    # -------------------------------------------------------------------------
    max_research_pivots: int = 4
    max_debate_rounds: int = 2
    max_remediation_attempts: int = 4
    history_window: int = 10
    graph_recursion_limit: int = 100

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Create and cache a Settings instance.

    In tests, override with FastAPI's dependency_overrides:
        app.dependency_overrides[get_settings] = lambda: Settings(debug=False)
    """
    return Settings()


# ---------------------------------------------------------------------------
# Module-level convenience instance
# ---------------------------------------------------------------------------
settings = Settings()
