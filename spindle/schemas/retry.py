from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RetryKind(str, Enum):
    """Backoff curve used between attempts"""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    NONE = "none"


class RetryStrategy(BaseModel):
    """Retry policy captured on a task when it is enqueued.

    The strategy is serialized into the task row, so changing the configured
    defaults later never alters tasks that are already queued.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: RetryKind = Field(
        RetryKind.EXPONENTIAL,
        description="Backoff curve",
        examples=["exponential", "linear", "fixed", "none"],
    )
    base_delay: float = Field(
        1.0,
        ge=0,
        description="Delay in seconds before the first retry",
        examples=[1.0, 5.0],
    )
    multiplier: float = Field(
        2.0,
        ge=1.0,
        description="Growth factor per attempt (exponential only)",
        examples=[2.0, 1.5],
    )
    max_delay: float = Field(
        300.0,
        ge=0,
        description="Upper bound in seconds for any single delay",
        examples=[300.0, 3600.0],
    )
    max_attempts: int = Field(
        5,
        ge=1,
        le=100,
        description="Total number of runs before the task is dead-lettered",
        examples=[3, 5],
    )
    jitter: float = Field(
        0.0,
        ge=0,
        le=1,
        description="Fraction of the delay randomized (seeded, reproducible)",
        examples=[0.0, 0.1],
    )

    @model_validator(mode="before")
    @classmethod
    def _single_run_without_retries(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("kind") in (RetryKind.NONE, "none"):
            data = {"max_attempts": 1, **data}
        return data

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryStrategy":
        if self.max_delay < self.base_delay:
            raise ValueError(
                f"max_delay ({self.max_delay}) must not be smaller than base_delay ({self.base_delay})"
            )
        if self.kind == RetryKind.NONE and self.max_attempts != 1:
            raise ValueError(
                f"A 'none' retry strategy runs exactly once, got max_attempts={self.max_attempts}"
            )
        return self
