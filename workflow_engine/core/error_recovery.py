"""Retry backoff for node attempts and store calls, and component health checks."""

import asyncio
import time
import random
from typing import Callable, Any, Optional, Dict, List, Type
from functools import wraps
from datetime import datetime

from .exceptions import WorkflowEngineError, TransientError, StorageError
from .logging import get_logger, ErrorRecoveryLogger


logger = get_logger(__name__)


class RetryConfig:
    """Exponential backoff settings.

    The delay before retrying after failed attempt ``n`` (1-based) is
    ``base_delay * exponential_base ** (n - 1)`` capped at ``max_delay``.
    Node retries use this without jitter so their timing is reproducible.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientError, StorageError]

    @classmethod
    def from_policy(cls, policy) -> 'RetryConfig':
        """Build the backoff for a node's RetryPolicy."""
        return cls(
            max_attempts=policy.max_attempts,
            base_delay=policy.base_delay,
            max_delay=policy.max_delay,
            jitter=False
        )

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        return isinstance(exception, tuple(self.retryable_exceptions))

    def get_delay(self, attempt: int) -> float:
        """Delay in seconds after the given (1-based) failed attempt."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Retry a synchronous call on recoverable errors, sleeping between attempts."""
    config = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        recovery_logger = ErrorRecoveryLogger(func.__qualname__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not config.should_retry(e, attempt):
                        if attempt > 1:
                            recovery_logger.log_recovery_failure(func.__name__, e, attempt)
                        raise
                    recovery_logger.log_recovery_attempt(func.__name__, e, attempt, config.max_attempts)
                    time.sleep(config.get_delay(attempt))
                    attempt += 1
        return wrapper

    return decorator


class HealthChecker:
    """Named component checks run with a per-check timeout.

    A check returns a message string or a dict merged into its result; raising
    marks the component unhealthy. Synchronous checks run in a worker thread so
    a blocked store cannot stall the event loop past the timeout.
    """

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("workflow_engine.health")

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        self.checks[name] = {"func": check_func, "timeout": timeout}
        self.logger.debug(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": datetime.utcnow().isoformat()
            }

        func = self.checks[name]["func"]
        timeout = self.checks[name]["timeout"]
        started = time.time()
        try:
            if asyncio.iscoroutinefunction(func):
                outcome = await asyncio.wait_for(func(), timeout=timeout)
            else:
                outcome = await asyncio.wait_for(asyncio.to_thread(func), timeout=timeout)
            result = {"status": "healthy", "message": outcome if isinstance(outcome, str) else "Check passed"}
            if isinstance(outcome, dict):
                result.update(outcome)
        except asyncio.TimeoutError:
            result = {"status": "timeout", "message": f"Health check timed out after {timeout}s"}
        except Exception as e:
            self.logger.warning(f"Health check '{name}' failed: {e}")
            result = {"status": "unhealthy", "message": str(e), "error_type": type(e).__name__}

        result["duration_ms"] = round((time.time() - started) * 1000, 2)
        result["timestamp"] = datetime.utcnow().isoformat()
        self.last_results[name] = result
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        results = {name: await self.run_check(name) for name in self.checks}
        healthy = all(result["status"] == "healthy" for result in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.utcnow().isoformat()
        }
