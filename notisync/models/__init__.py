from .circuit_breaker_state import CircuitBreakerState
from .kv_entry import KeyValueEntry

__all__ = [
    "CircuitBreakerState",
    "KeyValueEntry",
]
