"""Retry backoff for steps with the retry policy and component health checks."""

import asyncio
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict

from .logging import get_logger

logger = get_logger(__name__)


class RetryConfig:
    """Backoff schedule for one step run.

    ``max_retries`` counts re-attempts, so a step is tried at most
    ``max_retries + 1`` times. With ``base_delay`` 0 retries are immediate.
    """

    def __init__(
        self,
        max_retries: int = 0,
        base_delay: float = 0.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = False
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after ``attempt`` failed attempts."""
        return attempt < self.max_attempts

    def get_delay(self, attempt: int) -> float:
        if self.base_delay <= 0:
            return 0.0

        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay

    def wait(self, attempt: int) -> None:
        delay = self.get_delay(attempt)
        if delay > 0:
            time.sleep(delay)


class HealthChecker:
    """Named component checks reported by the ``/health`` endpoints and ``agentflow health``.

    A check is a plain callable returning a message or a dict of extra
    fields; raising marks the component unhealthy. Checks touch the
    database, so they run in a worker thread and are bounded by their timeout.
    """

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable[[], Any], timeout: float = 5.0):
        self.checks[name] = {"func": check_func, "timeout": timeout}
        logger.debug(f"Registered health check: {name}")

    def clear(self):
        self.checks.clear()
        self.last_results.clear()

    async def run_check(self, name: str) -> Dict[str, Any]:
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": datetime.utcnow().isoformat()
            }

        check = self.checks[name]
        start_time = time.time()
        try:
            outcome = await asyncio.wait_for(asyncio.to_thread(check["func"]), timeout=check["timeout"])
            result = {"status": "healthy", "message": outcome if isinstance(outcome, str) else "Check passed"}
            if isinstance(outcome, dict):
                result.update(outcome)
        except asyncio.TimeoutError:
            result = {"status": "timeout", "message": f"Health check timed out after {check['timeout']}s"}
        except Exception as e:
            logger.warning(f"Health check {name} failed: {e}")
            result = {"status": "unhealthy", "message": str(e), "error_type": type(e).__name__}

        result["duration_ms"] = round((time.time() - start_time) * 1000, 2)
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


# Global health checker instance
health_checker = HealthChecker()
