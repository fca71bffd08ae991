"""Retry policy — exponential backoff with jitter as pure functions."""

from __future__ import annotations

import random

from pydantic import BaseModel, Field


def backoff_delay(attempt: int, initial_backoff: float, multiplier: float) -> float:
    """Base delay to wait after failed attempt number ``attempt`` (1-based).

    ``initial_backoff`` after the first failure, multiplied by
    ``multiplier`` for each failure after that.
    """
    if attempt < 1:
        msg = "attempt numbers start at 1"
        raise ValueError(msg)
    return initial_backoff * multiplier ** (attempt - 1)


def jittered(base: float, rng: random.Random | None = None) -> float:
    """Add uniform jitter in ``[0, base]`` on top of ``base``."""
    source = rng if rng is not None else random
    return base + source.uniform(0, base)


class RetryPolicy(BaseModel):
    """Stateless retry configuration."""

    max_attempts: int = Field(default=3, ge=1)
    initial_backoff: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Jittered delay before the attempt that follows ``attempt``."""
        base = backoff_delay(attempt, self.initial_backoff, self.backoff_multiplier)
        return jittered(base, rng)
