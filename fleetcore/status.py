"""Reporting of the server's observed status."""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from typing import Any, Mapping

log = logging.getLogger(__name__)


class Status(enum.IntEnum):
    STARTING = 0
    CONFIGURING = 1
    HEALTHY = 2
    DEGRADED = 3
    FAILED = 4
    STOPPING = 5

    def __str__(self) -> str:
        return self.name


class Reporter(ABC):
    """Receives status updates."""

    @abstractmethod
    def status(
        self, status: Status, message: str, payload: Mapping[str, Any] | None = None
    ) -> None:
        """Report an updated status."""


class LogReporter(Reporter):
    """Writes reported statuses to the log."""

    def status(
        self, status: Status, message: str, payload: Mapping[str, Any] | None = None
    ) -> None:
        log.info(message, extra={"status": str(status)})


class ChainedReporter(Reporter):
    """Passes each status to several reporters in order, stopping at the first error."""

    def __init__(self, *reporters: Reporter) -> None:
        self._reporters = reporters

    def status(
        self, status: Status, message: str, payload: Mapping[str, Any] | None = None
    ) -> None:
        for reporter in self._reporters:
            reporter.status(status, message, payload)