"""
backend/sportsync/providers/http_client.py

Purpose:
    Shared outbound HTTP client for the Sportmonks provider and the settlement
    webhook: bounded retries with exponential backoff on transient statuses and
    network errors, Retry-After support and a per-client circuit breaker.

Dependencies:
    - httpx
"""

import asyncio
import logging
import time
from typing import Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger("sportsync.http_client")

_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
_NETWORK_ERRORS = (httpx.TimeoutException, httpx.ConnectError, httpx.RemoteProtocolError)
_MAX_DELAY_SECONDS = 60.0


class ProviderUnavailableError(RuntimeError):
    """Raised when the circuit breaker rejects a call."""


class CircuitBreaker:
    """Opens after ``failure_threshold`` exhausted calls; half-opens after ``recovery_timeout`` seconds."""

    def __init__(self, name: str, failure_threshold: int = 3, recovery_timeout: float = 300.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.opened_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.opened_at is not None

    def record_success(self) -> None:
        if self.is_open:
            logger.info("[%s] circuit closed again", self.name)
        self.failure_count = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.failure_count >= self.failure_threshold:
            self.opened_at = time.monotonic()
            logger.warning("[%s] circuit OPEN after %d failed call(s)", self.name, self.failure_count)

    def can_attempt(self) -> bool:
        if self.opened_at is None:
            return True
        return time.monotonic() - self.opened_at > self.recovery_timeout


def _retry_after(response: httpx.Response) -> Optional[float]:
    for header in ("retry-after", "x-ratelimit-retry-after"):
        raw = response.headers.get(header)
        if raw is None:
            continue
        try:
            return float(raw)
        except ValueError:
            continue
    return None


def _safe_url(url: str) -> str:
    """Scheme, host and path only; query strings may carry credentials."""
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


class ResilientClient:
    """httpx.AsyncClient wrapper used by every outbound integration."""

    def __init__(
        self,
        name: str,
        timeout: float = 15.0,
        max_retries: int = 3,
        base_delay: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        failure_threshold: int = 3,
        recovery_timeout: float = 300.0,
    ):
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._name = name
        self._max_retries = max(0, int(max_retries))
        self._base_delay = max(0.0, float(base_delay))
        self.circuit = CircuitBreaker(name, failure_threshold, recovery_timeout)

    @property
    def circuit_open(self) -> bool:
        return self.circuit.is_open

    def _backoff(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        delay = _retry_after(response) if response is not None else None
        if delay is None:
            delay = self._base_delay * (2 ** attempt)
        return min(delay, _MAX_DELAY_SECONDS)

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, retrying transient failures.

        Returns the last response once retries are exhausted on a retryable
        status (callers inspect ``status_code``); re-raises the last network
        error when no response was ever received.
        """
        if not self.circuit.can_attempt():
            raise ProviderUnavailableError(f"{self._name} circuit breaker is open")

        attempts = self._max_retries + 1
        last_response: Optional[httpx.Response] = None
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            try:
                response = await self._client.request(method, url, **kwargs)
            except _NETWORK_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "[%s] %s %s network error (attempt %d/%d): %s",
                    self._name, method, _safe_url(url), attempt + 1, attempts, exc,
                )
                if attempt < self._max_retries:
                    await asyncio.sleep(self._backoff(attempt))
                continue

            if response.status_code not in _RETRYABLE_STATUSES:
                self.circuit.record_success()
                return response

            last_response = response
            logger.warning(
                "[%s] %s %s returned %d (attempt %d/%d)",
                self._name, method, _safe_url(url), response.status_code, attempt + 1, attempts,
            )
            if attempt < self._max_retries:
                await asyncio.sleep(self._backoff(attempt, response))

        self.circuit.record_failure()
        if last_response is not None:
            logger.error(
                "[%s] %s %s gave up after %d attempt(s), last status %d",
                self._name, method, _safe_url(url), attempts, last_response.status_code,
            )
            return last_response
        logger.error(
            "[%s] %s %s gave up after %d attempt(s): %s",
            self._name, method, _safe_url(url), attempts, last_error,
        )
        raise last_error  # type: ignore[misc]

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()
