"""
In-memory stand-in for remote payment provider APIs.

Simulates what the bundled provider clients would otherwise get over HTTP:
  - Configurable latency and failure rate (rate limits, 5xx, permanent 4xx)
  - An object store holding provider-side records (intents, orders, payments)
  - A call ledger, so callers can assert how many remote calls were made

Provider-side state changes that happen out of band (a buyer approving an
order, a customer cancelling an STK prompt) are made by editing the stored
objects with ``update``.
"""

import asyncio
import copy
import random
import uuid
from typing import Any, Optional

from paygate.config import settings
from paygate.engine.retry import PermanentError, ProviderError, RateLimitError


class SimulatorBackend:
    """Shared remote state for all simulated provider clients."""

    def __init__(
        self,
        failure_rate: Optional[float] = None,
        latency_ms: Optional[int] = None,
    ):
        self._failure_rate = failure_rate if failure_rate is not None else settings.simulator_failure_rate
        self._latency_ms = latency_ms if latency_ms is not None else settings.simulator_latency_ms
        self.objects: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []

    async def roundtrip(self, provider: str, operation: str) -> None:
        """Account for one remote call and inject latency or failures."""
        self.calls.append((provider, operation))

        if self._latency_ms > 0:
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep(self._latency_ms * jitter / 1000)

        roll = random.random()

        if roll < self._failure_rate * 0.3:
            raise RateLimitError(
                message=f"{provider} rate limit: too many requests",
                retry_after=1.0,
            )

        if roll < self._failure_rate * 0.6:
            raise ProviderError(
                message=f"{provider} temporarily unavailable",
                status_code=503,
                retriable=True,
            )

        if roll < self._failure_rate:
            raise PermanentError(
                message=f"{provider} rejected the request",
                status_code=400,
            )

    def call_count(self, provider: Optional[str] = None, operation: Optional[str] = None) -> int:
        return sum(
            1
            for p, op in self.calls
            if (provider is None or p == provider) and (operation is None or op == operation)
        )

    @staticmethod
    def new_id(prefix: str = "", length: int = 16) -> str:
        return f"{prefix}{uuid.uuid4().hex[:length]}"

    def put(self, object_id: str, data: dict[str, Any]) -> dict[str, Any]:
        self.objects[object_id] = copy.deepcopy(data)
        return copy.deepcopy(data)

    def get(self, object_id: str) -> dict[str, Any]:
        if object_id not in self.objects:
            raise PermanentError(f"No such object: {object_id}", status_code=404)
        return copy.deepcopy(self.objects[object_id])

    def find(self, **criteria: Any) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(obj)
            for obj in self.objects.values()
            if all(obj.get(k) == v for k, v in criteria.items())
        ]

    def update(self, object_id: str, **changes: Any) -> dict[str, Any]:
        if object_id not in self.objects:
            raise PermanentError(f"No such object: {object_id}", status_code=404)
        self.objects[object_id].update(copy.deepcopy(changes))
        return copy.deepcopy(self.objects[object_id])


_default_backend: Optional[SimulatorBackend] = None


def default_backend() -> SimulatorBackend:
    """Process-wide simulator used when no backend is injected."""
    global _default_backend
    if _default_backend is None:
        _default_backend = SimulatorBackend()
    return _default_backend
