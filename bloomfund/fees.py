"""
Platform fee arithmetic. All amounts are integer cents.
"""

from __future__ import annotations

PLATFORM_FEE_PERCENTAGE = 5
PLATFORM_FEE_FIXED = 30

MIN_PLEDGE_AMOUNT = 100


def platform_fee(amount: int) -> int:
    """5% of the amount (rounded half up) plus a fixed 30 cents."""
    return (amount * PLATFORM_FEE_PERCENTAGE + 50) // 100 + PLATFORM_FEE_FIXED


def total_charge(amount: int) -> int:
    """What the backer pays so the campaign receives the full amount."""
    return amount + platform_fee(amount)


def minimum_pledge(min_contribution: int) -> int:
    return max(MIN_PLEDGE_AMOUNT, min_contribution or 0)
