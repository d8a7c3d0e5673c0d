"""Error kinds shared by the cache, sync and network layers.

Propagation rules:

* ``ValidationError``: bad input. Never retried, raised before any network
  or cache work.
* ``NetworkError``: transport failure after the retry budget is spent.
  Absorbed by the repository and turned into a pending/offline state.
* ``CircuitOpenError``: the circuit breaker rejected the call without I/O.
  A ``NetworkError`` subtype so it lands in the same pending/offline path.
* ``ApiError``: the server answered with a non-retryable 4xx.
* ``SecurityError``: key or crypto failure. Fatal, never retried, fails closed.
* ``ConflictError``: local and remote copies diverged under the manual policy.
"""

from __future__ import annotations


class HealthSyncError(Exception):
    """Base class for all healthsync errors."""


class ValidationError(HealthSyncError):
    """Raised when a record or request fails validation."""

    def __init__(self, violations: list[str] | str) -> None:
        if isinstance(violations, str):
            violations = [violations]
        self.violations = list(violations)
        super().__init__("; ".join(self.violations) or "Validation failed")


class NetworkError(HealthSyncError):
    """Raised when the remote service is unreachable after retries."""


class CircuitOpenError(NetworkError):
    """Raised when the circuit breaker is open and the call was not attempted."""

    def __init__(self, name: str, retry_after: float) -> None:
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit '{name}' is open; retry in {retry_after:.1f}s"
        )


class ApiError(HealthSyncError):
    """Raised when the server rejects a request with a client error."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


class SecurityError(HealthSyncError):
    """Raised when a key or crypto operation fails."""


class ConflictError(HealthSyncError):
    """Raised (or collected) when local and remote record copies diverge."""

    def __init__(self, record_id: str, local_version: int, remote_version: int) -> None:
        self.record_id = record_id
        self.local_version = local_version
        self.remote_version = remote_version
        super().__init__(
            f"Conflict on record {record_id}: local v{local_version} vs remote v{remote_version}"
        )
