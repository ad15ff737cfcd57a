"""Random values good enough for generating test data."""

from __future__ import annotations

import enum
import random
import string as _string
import time as _time
from datetime import datetime, timedelta

_CHARSET = _string.ascii_lowercase + _string.ascii_uppercase + _string.digits


class OffsetDirection(enum.IntEnum):
    BEFORE = 0
    AFTER = 1

    def __str__(self) -> str:
        return self.name.capitalize()


class Rnd:
    """A seeded random generator; seeded from the clock by default."""

    def __init__(self, seed: int | None = None) -> None:
        self._random = random.Random(int(_time.time()) if seed is None else seed)

    def randint(self, low: int, high: int) -> int:
        """Return an integer in ``[low, high)``."""
        if high <= low:
            raise ValueError(f"empty range [{low}, {high})")
        return self._random.randrange(low, high)

    def boolean(self) -> bool:
        return self._random.randrange(2) != 0

    def string(self, size: int) -> str:
        """Return ``size`` random alphanumeric characters."""
        return "".join(self._random.choice(_CHARSET) for _ in range(size))

    def time(
        self,
        moment: datetime,
        low: int,
        high: int,
        unit: timedelta,
        direction: OffsetDirection,
    ) -> datetime:
        """Offset ``moment`` by a random number of ``unit`` in ``[low, high)``."""
        offset = unit * self.randint(low, high)
        if direction == OffsetDirection.BEFORE:
            return moment - offset
        return moment + offset