"""Propagation of configuration reloads."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class Reloadable(ABC):
    """Something that can take an updated configuration."""

    @abstractmethod
    def reload(self, config: Any) -> None:
        """Apply ``config``; do nothing if it does not affect this manager."""


class ReloadManager(Reloadable):
    """Reloads several managers in order, stopping at the first error."""

    def __init__(self, *managers: Reloadable) -> None:
        self._managers = managers

    def reload(self, config: Any) -> None:
        for manager in self._managers:
            manager.reload(config)