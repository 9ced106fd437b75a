"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the escalation
backend. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        reasoning_model: Default remote reasoning model (LiteLLM identifier).
        analysis_models: Optional per-analysis-type model overrides, keyed by
            analysis type value (e.g. ``{"performance": "xai/grok-4"}``).
        use_mock_reasoning: If True, use the scripted reasoning client.
        remote_request_timeout_seconds: Timeout for a single remote call.
        remote_max_tokens: Maximum response tokens requested per call.
        rate_limit_rpm: Requests per minute allowed against the remote service.
        rate_limit_tpm: Tokens per minute allowed against the remote service.
        rate_limit_max_wait_seconds: Default wait before a call fails as rate limited.
        retry_max_attempts: Total attempts per remote call (first try included).
        retry_base_delay_seconds: First backoff delay.
        retry_max_delay_seconds: Backoff cap.
        retry_jitter: Relative jitter applied to each backoff delay.
        circuit_failure_threshold: Consecutive failures before a backend opens.
        circuit_cooldown_seconds: Time an open backend waits before a probe.
        session_default_budget_seconds: Default wall-clock budget of a conversation.
        session_default_budget_turns: Default number of follow-up turns.
        session_max_turns: Hard cap on the transcript length of a conversation.
        session_ttl_minutes: Idle time after which a conversation is evicted.
        session_sweep_interval_seconds: Interval of the eviction sweep.
        event_history_retention_minutes: How long the event history of a
            finalized session or finished tournament is kept for replay.
        context_max_turns: Transcript turns sent with each remote call.
        context_max_tokens: Token estimate ceiling for the transcript window.
        max_prompt_chars: Hard cap on a single prompt section.
        completion_confidence_threshold: Analyzer confidence that marks a
            conversation as ready to finalize.
        tournament_max_hypotheses: Hypotheses generated when none are given.
        tournament_max_rounds: Default round limit.
        tournament_parallelism: Default number of concurrently running lanes.
        tournament_eliminations_per_round: Hypotheses eliminated per round.
        tournament_elimination_fraction: Optional fraction eliminated per round
            (overrides the fixed count when set).
        tournament_round_timeout_seconds: Default round barrier timeout.
        tournament_budget_seconds: Default wall-clock budget of a tournament.
        tournament_max_remote_calls: Default ceiling on remote calls per tournament.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Remote reasoning
    # Model names must include provider prefix for LiteLLM (e.g., gemini/, xai/)
    reasoning_model: str = "gemini/gemini-2.5-pro"
    analysis_models: dict[str, str] = {}
    use_mock_reasoning: bool = False
    remote_request_timeout_seconds: float = 120.0
    remote_max_tokens: int = 4096

    # Rate limiting
    rate_limit_rpm: int = 30
    rate_limit_tpm: int = 100000
    rate_limit_max_wait_seconds: float = 30.0

    # Retry & circuit breaking
    retry_max_attempts: int = 4
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 4.0
    retry_jitter: float = 0.25
    circuit_failure_threshold: int = 5
    circuit_cooldown_seconds: float = 30.0

    # Conversations
    session_default_budget_seconds: float = 600.0
    session_default_budget_turns: int = 10
    session_max_turns: int = 50
    session_ttl_minutes: int = 30
    session_sweep_interval_seconds: float = 300.0
    event_history_retention_minutes: int = 30

    # Context window management
    context_max_turns: int = 12
    context_max_tokens: int = 40000
    max_prompt_chars: int = 20000
    completion_confidence_threshold: float = 0.9

    # Tournaments
    tournament_max_hypotheses: int = 5
    tournament_max_rounds: int = 3
    tournament_parallelism: int = 3
    tournament_eliminations_per_round: int = 1
    tournament_elimination_fraction: float | None = None
    tournament_round_timeout_seconds: float = 120.0
    tournament_budget_seconds: float = 300.0
    tournament_max_remote_calls: int = 60

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator(
        "rate_limit_rpm",
        "rate_limit_tpm",
        "retry_max_attempts",
        "circuit_failure_threshold",
        "session_default_budget_turns",
        "session_max_turns",
        "tournament_parallelism",
        "tournament_max_rounds",
        "tournament_eliminations_per_round",
    )
    @classmethod
    def _positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator(
        "remote_request_timeout_seconds",
        "session_default_budget_seconds",
        "tournament_round_timeout_seconds",
        "tournament_budget_seconds",
    )
    @classmethod
    def _positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("tournament_elimination_fraction")
    @classmethod
    def _fraction_range(cls, v: float | None) -> float | None:
        if v is not None and not 0.0 < v < 1.0:
            raise ValueError("must be between 0 and 1 (exclusive)")
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    def model_for(self, analysis_type: str) -> str:
        """Return the remote model configured for an analysis type."""
        return self.analysis_models.get(analysis_type, self.reasoning_model)


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

configure_logging(settings.log_level, settings.log_format)
