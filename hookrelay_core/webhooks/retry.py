"""Retry/backoff policy for outbound deliveries."""

import random
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from ..config import DispatchSettings


class RetryPolicy(BaseModel):
    """Exponential backoff with proportional jitter."""

    max_attempts: int = Field(default=5, ge=1)
    base_delay_seconds: float = Field(default=30.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.2, ge=0.0, lt=1.0)
    max_delay_seconds: float = Field(default=3600.0, gt=0)

    @classmethod
    def from_settings(cls, settings: DispatchSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            multiplier=settings.backoff_multiplier,
            jitter=settings.jitter,
            max_delay_seconds=settings.max_delay_seconds,
        )

    def base_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt ``attempt`` (1-based), without jitter."""
        attempt = max(attempt, 1)
        return min(self.base_delay_seconds * (self.multiplier ** (attempt - 1)), self.max_delay_seconds)

    def get_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Calculate delay for retry attempt"""
        attempt = max(attempt, 1)
        delay = self.base_delay_seconds * (self.multiplier ** (attempt - 1))

        # Apply jitter
        jitter_range = delay * self.jitter
        delay += (rng or random).uniform(-jitter_range, jitter_range)

        return min(max(delay, 0.0), self.max_delay_seconds)

    def should_retry(self, attempts: int, max_attempts: Optional[int] = None) -> bool:
        """True while another attempt is allowed after ``attempts`` have been made."""
        return attempts < (max_attempts or self.max_attempts)

    def next_attempt_at(
        self,
        attempt: int,
        now: datetime,
        rng: Optional[random.Random] = None,
    ) -> datetime:
        return now + timedelta(seconds=self.get_delay(attempt, rng))
