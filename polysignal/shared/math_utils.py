"""PnL arithmetic helpers."""
from __future__ import annotations

EPSILON = 1e-9


def percent_of(value: float, basis: float) -> float | None:
    """value / basis * 100, or None when the basis is not positive."""
    if basis <= EPSILON:
        return None
    return value / basis * 100


def derived_exit_price(
    total_bought: float,
    avg_price: float,
    realized_pnl: float,
) -> float | None:
    """Blended exit price of a fully closed position.

    (total cost + realized pnl) / shares bought. This reflects every partial
    sale, unlike the instantaneous market price at close time.
    """
    if total_bought <= EPSILON:
        return None
    return (total_bought * avg_price + realized_pnl) / total_bought
