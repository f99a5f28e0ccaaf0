"""Exchange error type and the Binance error codes the core reacts to."""

from typing import Optional

# Order's position side does not match the account's position mode.
POSITION_SIDE_MISMATCH = -4061
# "No need to change" responses: the requested setting is already in place.
POSITION_SIDE_UNCHANGED = -4059
MARGIN_TYPE_UNCHANGED = -4046


class ExchangeError(Exception):
    """A failed exchange call, carrying the exchange-specific error code."""

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def __str__(self) -> str:
        if self.code is not None:
            return f"[{self.code}] {self.message}"
        return self.message

    @property
    def is_position_side_mismatch(self) -> bool:
        if self.code is not None:
            return self.code == POSITION_SIDE_MISMATCH
        return "position side" in self.message.lower()

    @property
    def is_no_change(self) -> bool:
        """The exchange refused because the setting is already in place."""
        return self.code in (POSITION_SIDE_UNCHANGED, MARGIN_TYPE_UNCHANGED)

    @classmethod
    def from_payload(cls, payload: dict, status_code: Optional[int] = None) -> "ExchangeError":
        """Decode a Binance ``{"code": ..., "msg": ...}`` error body."""
        code = payload.get("code")
        try:
            code = int(code) if code is not None else None
        except (TypeError, ValueError):
            code = None
        message = str(payload.get("msg") or payload.get("error") or "Unknown exchange error")
        return cls(message, code=code, status_code=status_code)
