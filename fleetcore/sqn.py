"""Sequence numbers of indexed documents."""

from __future__ import annotations

UNDEFINED_SEQ_NO = -1


class SeqNo(list):
    """A list of document sequence numbers."""

    def __str__(self) -> str:
        return ",".join(str(number) for number in self)

    def is_set(self) -> bool:
        """True when the first sequence number is defined."""
        return bool(self) and self[0] >= 0

    def value(self) -> int:
        """Return the first sequence number, or the undefined marker."""
        return self[0] if self else UNDEFINED_SEQ_NO

    def clone(self) -> SeqNo:
        """Return an independent copy."""
        return SeqNo(self)


DEFAULT_SEQ_NO = SeqNo([UNDEFINED_SEQ_NO])