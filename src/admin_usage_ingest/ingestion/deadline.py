"""Caller-supplied deadline for one credential's pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Callable

from .errors import DeadlineExceeded


@dataclass(frozen=True)
class Deadline:
    """Absolute monotonic expiry shared by every blocking step of one credential."""

    expires_at: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    @classmethod
    def after(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> Deadline:
        """Return a deadline `seconds` from now."""
        return cls(expires_at=clock() + seconds, clock=clock)

    def remaining(self) -> float:
        """Return seconds left, never negative."""
        return max(self.expires_at - self.clock(), 0.0)

    def check(self, stage: str) -> None:
        """Raise DeadlineExceeded when the deadline has passed."""
        if self.clock() >= self.expires_at:
            raise DeadlineExceeded(f"Credential deadline exceeded during {stage}.")
