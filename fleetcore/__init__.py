"""Policy monitoring, permission hashing, throttling and version checks for fleet servers."""

__version__ = "8.0.0"