"""
Shared test fixtures for the eventrelay library.

Usage:
    from tests.fixtures import FakeClock, OrderPlaced, OrderShipped, PasswordChanged
"""

from tests.fixtures.clock import FakeClock
from tests.fixtures.events import (
    LoginAttempted,
    OrderCancelled,
    OrderPlaced,
    OrderShipped,
    PasswordChanged,
)
from tests.fixtures.helpers import AppendFn

__all__ = [
    "AppendFn",
    "FakeClock",
    "LoginAttempted",
    "OrderCancelled",
    "OrderPlaced",
    "OrderShipped",
    "PasswordChanged",
]
