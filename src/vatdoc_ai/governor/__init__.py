"""Rate, concurrency and circuit-breaker control for outbound service calls."""

from .request_governor import Priority, RequestGovernor

__all__ = ["RequestGovernor", "Priority"]
