from __future__ import annotations

import math

# (upper bound exclusive, tick) for KRX equities.
TICK_LADDER: tuple[tuple[float, int], ...] = (
    (1_000, 1),
    (5_000, 5),
    (10_000, 10),
    (50_000, 50),
    (100_000, 100),
    (500_000, 500),
)
TOP_TICK = 1_000


def floor_to_step(value: float, step: float) -> float:
    if step <= 0:
        raise ValueError("step must be > 0")
    return math.floor(value / step) * step


def tick_size(price: float) -> int:
    for upper, tick in TICK_LADDER:
        if price < upper:
            return tick
    return TOP_TICK


def round_to_tick(price: float) -> int:
    """Round a limit price down onto the exchange tick ladder."""
    if price <= 0:
        return 0
    return int(floor_to_step(price, tick_size(price)))


def order_quantity(*, investment: float, price: float, fee_rate: float) -> int:
    if price <= 0 or investment <= 0:
        return 0
    return max(0, math.floor(investment * (1.0 - fee_rate) / price))


def pnl_pct(avg_cost: float, price: float) -> float:
    if avg_cost <= 0:
        return 0.0
    return (price - avg_cost) / avg_cost * 100.0
