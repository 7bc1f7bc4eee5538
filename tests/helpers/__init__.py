"""Test helpers for the perpguard test suite"""

from tests.helpers.exchange_stubs import (
    FAST_EXECUTION,
    FIXED_NOW,
    BlockingOracle,
    FakeExchange,
    hours_ago,
    make_context,
)

__all__ = [
    "FAST_EXECUTION",
    "FIXED_NOW",
    "BlockingOracle",
    "FakeExchange",
    "hours_ago",
    "make_context",
]
