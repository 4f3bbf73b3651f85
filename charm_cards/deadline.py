"""Per-operation deadline shared by the workflow steps."""

from __future__ import annotations

import time
from typing import Callable

from .errors import DeadlineExceededError


class Deadline:
    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.seconds = seconds
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(self._expires_at - self._clock(), 0.0)

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self, stage: str) -> None:
        """Raise :class:`DeadlineExceededError` if the deadline has passed."""

        if self.expired():
            raise DeadlineExceededError(
                f"Operation exceeded its {self.seconds:.0f}s deadline before {stage}",
                stage=stage,
            )

    def clamp(self, timeout: float) -> float:
        """Shrink ``timeout`` so a single wait cannot outlive the deadline."""

        remaining = self.remaining()
        return timeout if remaining is None else min(timeout, remaining)
