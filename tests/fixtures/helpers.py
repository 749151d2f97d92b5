"""Type aliases for fixture-provided helpers."""

from collections.abc import Awaitable, Callable
from uuid import UUID

# Signature of the ``append`` fixture:
# append(event, aggregate_id="42", aggregate_type="Order", tenant=None)
AppendFn = Callable[..., Awaitable[UUID]]
