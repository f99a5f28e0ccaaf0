"""Exchange account handle protocol.

Defines the interface the order gateway and scheduler need from an
exchange account.  ``BinanceFuturesClient`` satisfies it; tests use
duck-typed fakes.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from scantrader.broker.models import AccountSnapshot, PositionMode, SymbolPrecision


@runtime_checkable
class ExchangeHandle(Protocol):
    """Interface every exchange account must satisfy.

    All methods may raise ``ExchangeError`` carrying the exchange code.
    """

    async def get_position_mode(self) -> PositionMode:
        ...

    async def set_leverage(self, symbol: str, leverage: int) -> dict:
        ...

    async def place_order(self, params: dict) -> dict:
        ...

    async def get_latest_price(self, symbol: str) -> float:
        ...

    async def get_symbol_precision(self, symbol: str) -> SymbolPrecision:
        ...

    async def get_account(self) -> AccountSnapshot:
        ...
