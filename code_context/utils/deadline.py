"""Operation-scoped deadlines."""

from __future__ import annotations

import time
from typing import Optional


class Deadline:
    """A point on the monotonic clock after which an operation should stop.

    ``Deadline(None)`` never expires.
    """

    def __init__(self, seconds: Optional[float] = None):
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    @classmethod
    def coerce(cls, value: "Deadline | float | None") -> "Deadline":
        if isinstance(value, Deadline):
            return value
        return cls(value)

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining()!r})"
