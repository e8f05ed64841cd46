"""
shared/utils/resilience.py
Circuit breakers and retry policy for outbound calls
(payout gateway, email/SMS/push providers).
"""

import logging

from pybreaker import CircuitBreaker, CircuitBreakerListener
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class _LoggingListener(CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        logger.warning(f"Circuit breaker '{cb.name}': {old_state.name} -> {new_state.name}")


class CircuitBreakerManager:
    """Manages one circuit breaker per downstream service."""

    def __init__(self, fail_max: int = 5, reset_timeout: int = 60):
        self.fail_max = fail_max
        self.reset_timeout = reset_timeout
        self.breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, service_name: str) -> CircuitBreaker:
        if service_name not in self.breakers:
            self.breakers[service_name] = CircuitBreaker(
                fail_max=self.fail_max,
                reset_timeout=self.reset_timeout,
                listeners=[_LoggingListener()],
                name=service_name,
            )
        return self.breakers[service_name]


circuit_breaker_manager = CircuitBreakerManager()


def retry_transient(*exc_types: type[BaseException], attempts: int = 3):
    """Retry decorator for transient network errors with exponential backoff."""
    return retry(
        retry=retry_if_exception_type(exc_types or (Exception,)),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.5, max=8),
        reraise=True,
    )
