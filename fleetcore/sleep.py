"""Sleeping that can be cut short."""

from __future__ import annotations

import threading
import time


class SleepCancelled(Exception):
    """Raised when a sleep is interrupted by its cancel event."""


def sleep_with_cancel(seconds: float, cancel: threading.Event | None = None) -> None:
    """Sleep for ``seconds`` unless ``cancel`` is set first."""
    seconds = max(0.0, seconds)
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise SleepCancelled("sleep cancelled")