"""
HTTP exception types for the API server.

Pool errors from teepool.exceptions are translated with from_pool_error().
"""

from typing import Optional

from teepool.exceptions import (
    CapacityExceeded,
    PoolShutdown,
    ProvisioningFailure,
    RequestTimeout,
    TeePoolError,
    UnsupportedCapability,
)


class APIError(Exception):
    """Base exception for API errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(
        self,
        message: str,
        request_id: Optional[str] = None,
        retry_after: Optional[float] = None,
        code: Optional[str] = None,
    ) -> None:
        self.message = message
        self.request_id = request_id
        self.retry_after = retry_after
        if code is not None:
            self.code = code
        super().__init__(message)

    def headers(self) -> dict:
        if self.retry_after is None:
            return {}
        # Retry-After takes whole seconds
        return {"Retry-After": str(max(1, int(round(self.retry_after))))}


class BadRequestError(APIError):
    """Request can never be satisfied as stated."""

    status_code = 400
    code = "bad_request"


class AuthenticationError(APIError):
    """Invalid or missing authentication credentials."""

    status_code = 401
    code = "authentication_error"


class NodeNotFoundError(APIError):
    """Worker does not exist or is not in a state that allows the operation."""

    status_code = 404
    code = "node_not_found"


class CapacityError(APIError):
    """Pool at max_nodes and the admission queue is full."""

    status_code = 429
    code = "capacity_exceeded"


class UnavailableError(APIError):
    """Provisioning failed or the orchestrator is shutting down."""

    status_code = 503
    code = "unavailable"


class GatewayTimeoutError(APIError):
    """No worker became available before the cold start deadline."""

    status_code = 504
    code = "request_timeout"


def from_pool_error(
    exc: TeePoolError,
    request_id: Optional[str] = None,
    default_retry_after: Optional[float] = None,
) -> APIError:
    """Map a pool exception onto its HTTP counterpart."""
    if isinstance(exc, UnsupportedCapability):
        cls = BadRequestError
    elif isinstance(exc, RequestTimeout):
        cls = GatewayTimeoutError
    elif isinstance(exc, CapacityExceeded):
        cls = CapacityError
    elif isinstance(exc, (ProvisioningFailure, PoolShutdown)):
        cls = UnavailableError
    else:
        cls = APIError

    retry_after = exc.retry_after
    if retry_after is None and cls is not BadRequestError:
        retry_after = default_retry_after
    return cls(
        exc.message,
        request_id=request_id,
        retry_after=retry_after,
        code=exc.code,
    )
