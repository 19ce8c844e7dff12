"""Customer loyalty rules: points per purchase and the lifetime-spend tier table."""
from decimal import Decimal, ROUND_FLOOR
from typing import Any

POINTS_PER_CURRENCY_UNIT = Decimal(100)

# Highest tier first; a customer lands in the first tier whose floor they meet.
TIER_THRESHOLDS: list[tuple[str, int]] = [
    ("platinum", 50000),
    ("gold", 25000),
    ("silver", 10000),
]
BASE_TIER = "bronze"


def _dec(amount: Any) -> Decimal:
    return amount if isinstance(amount, Decimal) else Decimal(str(amount or 0))


def points_for(amount: Any) -> int:
    """1 point per 100 currency units spent, floored."""
    return int((_dec(amount) / POINTS_PER_CURRENCY_UNIT).to_integral_value(rounding=ROUND_FLOOR))


def tier_for(lifetime_spent: Any) -> str:
    spent = _dec(lifetime_spent)
    for tier, floor in TIER_THRESHOLDS:
        if spent >= floor:
            return tier
    return BASE_TIER


def tier_case_sql(spend_expr: str) -> str:
    """SQL CASE expression mapping ``spend_expr`` to a tier name.

    ``spend_expr`` may contain one ``%s`` placeholder; it is repeated once per
    threshold, so the caller must bind the same value ``len(TIER_THRESHOLDS)``
    times.
    """
    whens = " ".join(f"WHEN {spend_expr} >= {floor} THEN '{tier}'" for tier, floor in TIER_THRESHOLDS)
    return f"CASE {whens} ELSE '{BASE_TIER}' END"
