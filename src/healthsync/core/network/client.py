"""HTTP client for the remote health-records API.

Every call passes through the circuit breaker and a bounded exponential
backoff retry:

* transport errors (timeouts, refused connections), 429 and 5xx are retried;
* other 4xx responses raise :class:`ApiError` immediately and do not count
  against the breaker;
* an open circuit raises :class:`CircuitOpenError` without any I/O;
* an exhausted retry budget counts as one breaker failure and raises
  :class:`NetworkError`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx

from healthsync.core.errors import ApiError, NetworkError
from healthsync.core.network.circuit_breaker import CircuitBreaker

if TYPE_CHECKING:
    from healthsync.core.auth import AuthService

logger = logging.getLogger(__name__)

USER_AGENT = "healthsync/0.1.0"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``base_delay * 2**attempt`` capped at ``max_delay``."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)


@dataclass
class ApiResponse:
    """Result of a successful call."""

    status_code: int
    data: Any
    attempts: int


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class ApiClient:
    """Versioned JSON client with retry and circuit breaker.

    Usage::

        client = ApiClient("https://api.example.health", api_version=1)
        response = await client.request("GET", "/health-records/fhir/r4", params={...})
        await client.aclose()
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_version: int = 1,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        auth: AuthService | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_version = api_version
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._breaker = circuit_breaker or CircuitBreaker()
        self._retry = retry_policy or RetryPolicy()
        self._auth = auth
        self._sleep = sleep

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry

    def url_for(self, path: str) -> str:
        """Absolute URL for an API path, versioned under ``/api/v{n}``."""
        if not path.startswith("/"):
            path = "/" + path
        return f"{self._base_url}/api/v{self._api_version}{path}"

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> ApiResponse:
        """Execute a request with circuit breaker and retry.

        Raises:
            CircuitOpenError: Circuit open; nothing was sent.
            ApiError: Non-retryable client error.
            NetworkError: Retries exhausted.
        """
        self._breaker.before_call()
        try:
            return await self._send(method, path, json=json, params=params)
        finally:
            # Cancellation and auth failures end a half-open trial too
            self._breaker.release()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any,
        params: dict[str, Any] | None,
    ) -> ApiResponse:
        url = self.url_for(path)
        headers = await self._headers()
        last_error = ""

        for attempt in range(self._retry.max_attempts):
            delay = self._retry.delay_for(attempt)
            try:
                response = await self._http.request(
                    method.upper(), url, json=json, params=params, headers=headers
                )
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "%s %s transport error (attempt %d/%d): %s",
                    method.upper(),
                    path,
                    attempt + 1,
                    self._retry.max_attempts,
                    type(exc).__name__,
                )
            else:
                status = response.status_code
                if status < 400:
                    self._breaker.record_success()
                    return ApiResponse(
                        status_code=status,
                        data=_decode(response),
                        attempts=attempt + 1,
                    )
                if not _is_retryable(status):
                    raise ApiError(status, response.text[:200])

                last_error = f"HTTP {status}"
                if status == 429:
                    delay = min(_retry_after(response, delay), self._retry.max_delay)
                logger.warning(
                    "%s %s returned %d (attempt %d/%d)",
                    method.upper(),
                    path,
                    status,
                    attempt + 1,
                    self._retry.max_attempts,
                )

            if attempt < self._retry.max_attempts - 1:
                await self._sleep(delay)

        self._breaker.record_failure()
        raise NetworkError(
            f"{method.upper()} {path} failed after {self._retry.max_attempts} attempts: {last_error}"
        )

    async def get(self, path: str, *, params: dict[str, Any] | None = None) -> ApiResponse:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, *, json: Any = None) -> ApiResponse:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, *, json: Any = None) -> ApiResponse:
        return await self.request("PUT", path, json=json)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self._auth is not None:
            token = await self._auth.get_access_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _retry_after(response: httpx.Response, default: float) -> float:
    value = response.headers.get("Retry-After")
    if value is None:
        return default
    try:
        return max(float(value), 0.0)
    except ValueError:
        return default
