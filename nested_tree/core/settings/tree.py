"""Nested set tree behaviour settings."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class TreeSettings(BaseSettings):
    """Structural mutation and navigation settings.

    Environment variables use TREE_ prefix.
    Example: TREE_LOCK_PARTITIONS=false, TREE_VERIFY_AFTER_MUTATION=true
    """

    # ─────────────────────────────────────────────────────
    # Mutation safety
    # ─────────────────────────────────────────────────────
    lock_partitions: bool = Field(
        default=True,
        description=(
            "Lock every row of the affected root partition (SELECT ... FOR UPDATE) "
            "before renumbering. Backends without row locks rely on transaction isolation."
        ),
    )
    verify_after_mutation: bool = Field(
        default=False,
        description=(
            "Re-read the affected partitions after each mutation and roll back "
            "with TreeIntegrityError if any range invariant is violated."
        ),
    )

    # ─────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────
    path_separator: str = Field(
        default=" > ",
        max_length=20,
        description="Default separator used by NodeHandle.get_path().",
    )

    # ─────────────────────────────────────────────────────
    # Conflict retry (used by retry_on_conflict)
    # ─────────────────────────────────────────────────────
    conflict_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Attempts for a mutation failing with ConcurrencyConflictError.",
    )
    conflict_retry_delay: float = Field(
        default=0.05,
        ge=0.0,
        le=10.0,
        description="Initial delay in seconds between conflict retries.",
    )
    conflict_retry_max_delay: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description="Upper bound for the exponential backoff delay.",
    )

    model_config = SettingsConfigDict(
        env_prefix="TREE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @model_validator(mode="after")
    def check_retry_delays(self) -> TreeSettings:
        if self.conflict_retry_max_delay < self.conflict_retry_delay:
            msg = "conflict_retry_max_delay must be >= conflict_retry_delay"
            raise ValueError(msg)
        return self
