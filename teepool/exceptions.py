"""
Typed exceptions for teepool.

Provides structured error handling with:
- TeePoolError: Base exception for all teepool errors
- ProvisioningFailure: A worker could not be brought online
- HealthCheckFailure: Startup health probe never succeeded
- CapacityExceeded: Pool at max size and admission queue full
- UnsupportedCapability: No worker the pool can create serves the workload
- RequestTimeout: A queued request's deadline elapsed
- PoolShutdown: The orchestrator stopped while the request was waiting

All exceptions include structured attributes for programmatic handling.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class TeePoolError(Exception):
    """Base exception for all teepool errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context as key-value pairs
        retry_after: Suggested seconds to wait before retrying, if any
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.retry_after = retry_after
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging or API responses."""
        payload: Dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


class ProvisioningFailure(TeePoolError):
    """Backend create call failed or the worker never became healthy.

    Propagated to every queued request that depended on the failed creation
    attempt. Not retried automatically.

    Attributes:
        worker_id: Id of the worker whose creation failed
    """

    def __init__(
        self,
        message: str,
        *,
        worker_id: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        details = details or {}
        if worker_id:
            details["worker_id"] = worker_id
        self.worker_id = worker_id
        super().__init__(
            message,
            code=code or "provisioning_failure",
            details=details,
            retry_after=retry_after,
        )


class HealthCheckFailure(ProvisioningFailure):
    """Startup health probe did not succeed within the cold start window.

    Transient probe failures inside the window are retried, never raised.
    """

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        attempts: int = 0,
        worker_id: Optional[str] = None,
    ) -> None:
        self.url = url
        self.attempts = attempts
        super().__init__(
            message,
            worker_id=worker_id,
            code="health_check_failure",
            details={"url": url, "attempts": attempts},
        )


class CapacityExceeded(TeePoolError):
    """Pool is at max_nodes and the admission queue is at its bound."""

    def __init__(
        self,
        message: str,
        *,
        max_nodes: Optional[int] = None,
        queue_depth: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        self.max_nodes = max_nodes
        self.queue_depth = queue_depth
        super().__init__(
            message,
            code="capacity_exceeded",
            details={"max_nodes": max_nodes, "queue_depth": queue_depth},
            retry_after=retry_after,
        )


class UnsupportedCapability(TeePoolError):
    """Requested capability is outside what the worker template serves.

    Every worker is built from the same template, so waiting would never
    help; the request is refused before anything is queued or created.
    """

    def __init__(
        self,
        capability: str,
        *,
        supported: Optional[Iterable[str]] = None,
    ) -> None:
        self.capability = capability
        self.supported = sorted(supported or [])
        super().__init__(
            f"No worker serves capability {capability!r} "
            f"(supported: {', '.join(self.supported)})",
            code="unsupported_capability",
            details={"capability": capability, "supported": self.supported},
        )


class RequestTimeout(TeePoolError, TimeoutError):
    """A pending request's deadline elapsed before a worker was assigned.

    Distinct from ProvisioningFailure: the pool may still serve a retry,
    e.g. once the worker that was being provisioned turns warm.

    Attributes:
        request_id: Id of the expired pending request
        timeout_ms: The deadline the request was given
        worker_id: Last known worker the request was waiting on
    """

    def __init__(
        self,
        message: str,
        *,
        request_id: Optional[str] = None,
        timeout_ms: Optional[float] = None,
        worker_id: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        self.request_id = request_id
        self.timeout_ms = timeout_ms
        self.worker_id = worker_id
        super().__init__(
            message,
            code="request_timeout",
            details={
                "request_id": request_id,
                "timeout_ms": timeout_ms,
                "worker_id": worker_id,
            },
            retry_after=retry_after,
        )


class PoolShutdown(TeePoolError):
    """The orchestrator is stopping; in-flight requests are rejected."""

    def __init__(self, message: str = "Orchestrator is shutting down") -> None:
        super().__init__(message, code="pool_shutdown")
