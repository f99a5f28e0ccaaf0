"""Scan cursor — the scheduler's position in its profile × symbol-batch walk."""

from dataclasses import dataclass, replace
from typing import Sequence


@dataclass(frozen=True)
class ScanCursor:
    """Two-level cursor: which profile, and which slice of the symbol list.

    ``profile_index`` may equal the profile count; that state means "every
    profile has seen the current batch" and the next step wraps.
    """

    profile_index: int = 0
    asset_batch_offset: int = 0

    def __post_init__(self) -> None:
        if self.profile_index < 0:
            raise ValueError(f"profile_index must be >= 0, got {self.profile_index}")
        if self.asset_batch_offset < 0:
            raise ValueError(
                f"asset_batch_offset must be >= 0, got {self.asset_batch_offset}"
            )

    def needs_wrap(self, profile_count: int) -> bool:
        """True once every profile has been visited for the current batch."""
        return self.profile_index >= profile_count

    def next_profile(self) -> "ScanCursor":
        return replace(self, profile_index=self.profile_index + 1)

    def wrapped(self, batch_size: int, symbol_count: int) -> tuple["ScanCursor", bool]:
        """Move to the next symbol batch and back to the first profile.

        Returns ``(cursor, cycle_complete)``; ``cycle_complete`` is True when
        the batch offset ran past the symbol list and restarted at 0.
        """
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        next_offset = self.asset_batch_offset + batch_size
        if next_offset >= symbol_count:
            return ScanCursor(0, 0), True
        return ScanCursor(0, next_offset), False

    def batch_of(self, symbols: Sequence[str], batch_size: int) -> list[str]:
        """The slice of *symbols* this cursor points at (may be empty)."""
        start = self.asset_batch_offset
        return list(symbols[start : start + batch_size])

    def to_dict(self) -> dict:
        return {
            "profileIndex": self.profile_index,
            "assetBatchOffset": self.asset_batch_offset,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScanCursor":
        """Inverse of :meth:`to_dict`.  Raises ``ValueError`` on bad data."""
        try:
            return cls(
                profile_index=int(data["profileIndex"]),
                asset_batch_offset=int(data["assetBatchOffset"]),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Malformed cursor: {data!r}") from exc
