"""Turning SIGINT and SIGTERM into a stop event."""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Iterator

log = logging.getLogger(__name__)

_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def handle_interrupt() -> Iterator[threading.Event]:
    """Yield an event that is set on the first SIGINT or SIGTERM.

    The previous handlers come back after the first signal or on exit.
    """
    stop = threading.Event()
    previous = {
        sig: (handler if handler is not None else signal.SIG_DFL)
        for sig in _SIGNALS
        for handler in (signal.getsignal(sig),)
    }
    restored = False

    def restore() -> None:
        nonlocal restored
        if restored:
            return
        restored = True
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        log.debug("Signal handler close")

    def on_signal(signum, frame) -> None:
        log.info("On signal", extra={"sig": signal.Signals(signum).name})
        stop.set()
        restore()

    log.debug("Install signal handlers for SIGINT and SIGTERM")
    for sig in _SIGNALS:
        signal.signal(sig, on_signal)
    try:
        yield stop
    finally:
        if not stop.is_set():
            log.debug("Shutdown context done")
        restore()