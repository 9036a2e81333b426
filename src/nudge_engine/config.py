"""Configuration settings for the nudge decision engine."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings

from nudge_engine.models import (
    DEFAULT_CONFIDENCE,
    DEFAULT_DECAY_RATE,
    HIGH_EVIDENCE_THRESHOLD,
    MAX_MEMORIES_PER_USER,
    MAX_REINFORCED_CONFIDENCE,
    MIN_CONFIDENCE_THRESHOLD,
    REINFORCEMENT_RATE,
)


class Settings(BaseSettings):
    """Nudge engine configuration."""

    # Database
    db_path: Path = Field(
        default=Path.home() / ".nudge-engine" / "nudge.db",
        description="Path to SQLite database",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level: DEBUG, INFO, WARNING, ERROR")
    log_format: str = Field(
        default="pretty", description="Log format: 'pretty' (human-readable) or 'json' (structured)"
    )

    # Memory limits
    max_memories_per_user: int = Field(
        default=MAX_MEMORIES_PER_USER,
        description="Hard cap on memories per user (enforced by pruning)",
    )
    min_confidence_threshold: float = Field(
        default=MIN_CONFIDENCE_THRESHOLD,
        description="Memories below this confidence are excluded and pruned",
    )
    default_confidence: float = Field(
        default=DEFAULT_CONFIDENCE,
        description="Confidence assigned to new memories when none is given",
    )
    default_decay_rate: float = Field(
        default=DEFAULT_DECAY_RATE,
        description="Weekly decay rate assigned to new memories",
    )

    # Reinforcement
    reinforcement_rate: float = Field(
        default=REINFORCEMENT_RATE,
        description="Fraction of remaining headroom added per reinforcement",
    )
    max_reinforced_confidence: float = Field(
        default=MAX_REINFORCED_CONFIDENCE,
        description="Ceiling for confidence after reinforcement",
    )
    high_evidence_threshold: int = Field(
        default=HIGH_EVIDENCE_THRESHOLD,
        description="Evidence count at which decay rate is halved",
    )

    # Decay sweep
    decay_interval_hours: int = Field(
        default=24, description="Minimum hours between two decays of the same memory"
    )

    # Near-duplicate detection on store
    dedup_prefix_length: int = Field(
        default=50, description="Leading characters of new content used for duplicate matching"
    )
    dedup_case_sensitive: bool = Field(
        default=False, description="Whether duplicate matching is case-sensitive"
    )

    # Retrieval
    default_retrieval_limit: int = Field(
        default=10, description="Default number of memories retrieved per decision"
    )

    # Orchestration
    memory_retrieval_timeout_seconds: float = Field(
        default=2.0, description="Upper bound on memory retrieval before falling back to none"
    )
    audit_enabled: bool = Field(default=True, description="Persist decision records")
    decision_log_retention_days: int = Field(
        default=90, description="Days to retain decision records (0 = forever)"
    )

    model_config = {"env_prefix": "NUDGE_ENGINE_"}


def get_settings() -> Settings:
    """Get settings instance."""
    return Settings()


def ensure_data_dir(settings: Settings) -> None:
    """Ensure data directory exists."""
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
