"""Technical indicators — SMA, EMA, RSI, MACD line. Pure functions, no I/O.

All functions take a closing-price series ordered oldest-first.
"""

NEUTRAL_RSI = 50.0


def calculate_sma(closes: list[float], period: int) -> float:
    """Simple moving average of the last *period* closes.

    Raises ``ValueError`` if fewer than *period* closes are provided.
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    if len(closes) < period:
        raise ValueError(
            f"Need at least {period} closes for SMA({period}), got {len(closes)}"
        )
    window = closes[-period:]
    return sum(window) / period


def calculate_ema(closes: list[float], period: int) -> list[float]:
    """Calculate an Exponential Moving Average series.

    Uses ``EMA_today = close × k + EMA_yesterday × (1 - k)`` with
    ``k = 2 / (period + 1)``.  The series is seeded with the first close,
    so it has the same length as *closes* and no leading gaps.

    Raises ``ValueError`` on an empty series.
    """
    if not closes:
        raise ValueError("Need at least 1 close for EMA")

    k = 2.0 / (period + 1)
    ema = [closes[0]]
    for price in closes[1:]:
        ema.append(price * k + ema[-1] * (1 - k))
    return ema


# ── RSI ──────────────────────────────────────────────────────────────────


def calculate_rsi(closes: list[float], period: int = 14) -> float:
    """Relative Strength Index over the last *period* price changes.

    Simple (not Wilder-smoothed) averages of gains and losses across the
    final *period* deltas:

        RS  = avg_gain / avg_loss
        RSI = 100 - 100 / (1 + RS)

    Returns 50 when fewer than ``period + 1`` closes are available and 100
    when the window holds no losses.
    """
    if period <= 0:
        raise ValueError(f"period must be positive, got {period}")
    if len(closes) < period + 1:
        return NEUTRAL_RSI

    gains = 0.0
    losses = 0.0
    for i in range(len(closes) - period, len(closes)):
        diff = closes[i] - closes[i - 1]
        if diff >= 0:
            gains += diff
        else:
            losses -= diff

    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


# ── MACD ─────────────────────────────────────────────────────────────────


def calculate_macd_line(
    closes: list[float],
    fast: int = 12,
    slow: int = 26,
) -> float:
    """Latest ``EMA(fast) - EMA(slow)`` value (no signal line)."""
    return calculate_ema(closes, fast)[-1] - calculate_ema(closes, slow)[-1]
