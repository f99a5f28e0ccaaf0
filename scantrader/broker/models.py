"""Broker data models — typed representations of Binance futures objects."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class PositionMode(str, Enum):
    """Account-level position mode."""

    ONE_WAY = "ONE_WAY"
    HEDGE = "HEDGE"


@dataclass(frozen=True)
class Candle:
    """A single candlestick bar."""

    time: int  # open time, ms since epoch
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class SymbolPrecision:
    """Decimal places the exchange accepts for a symbol."""

    quantity_precision: int = 3
    price_precision: int = 2


@dataclass(frozen=True)
class OrderRequest:
    """An entry order request.

    ``quantity`` of 0 means "size it from the fixed margin and leverage".
    """

    symbol: str
    side: OrderSide
    quantity: float = 0.0
    leverage: int = 10
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of an entry or close request."""

    success: bool
    message: str
    order_id: Optional[str] = None


@dataclass(frozen=True)
class Position:
    """An open futures position.  ``amount`` is signed: >0 long, <0 short."""

    symbol: str
    amount: float
    entry_price: float = 0.0
    notional: float = 0.0
    unrealized_pnl: float = 0.0
    initial_margin: float = 0.0
    position_side: str = "BOTH"


@dataclass(frozen=True)
class AccountSnapshot:
    """Portfolio view refreshed after orders resolve."""

    total_balance: float
    unrealized_pnl: float
    positions: list[Position] = field(default_factory=list)
    is_testnet: bool = False
