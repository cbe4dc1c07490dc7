"""
Dispatch error taxonomy.

Every failure that can reach a caller is a DispatchError carrying an HTTP
status, one stable machine-readable code and structured context. The same
failure condition maps to the same code regardless of the entry point that
triggered it.
"""

from enum import Enum
from typing import Any, Optional, Union


class ErrorCode(str, Enum):
    """Stable machine-readable error codes."""

    # Not found
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    COURIER_NOT_FOUND = "COURIER_NOT_FOUND"
    DELIVERY_NOT_FOUND = "DELIVERY_NOT_FOUND"
    ROUTE_NOT_FOUND = "ROUTE_NOT_FOUND"
    ALTERNATE_PLAN_NOT_FOUND = "ALTERNATE_PLAN_NOT_FOUND"
    GEO_NOT_FOUND = "GEO_NOT_FOUND"

    # Validation
    INVALID_COURIER_ROLE = "INVALID_COURIER_ROLE"
    COURIER_INACTIVE = "COURIER_INACTIVE"
    REASSIGNMENT_REASON_REQUIRED = "REASSIGNMENT_REASON_REQUIRED"
    ROUTE_CAPACITY_EXCEEDED = "ROUTE_CAPACITY_EXCEEDED"
    EMPTY_ROUTE = "EMPTY_ROUTE"
    DUPLICATE_ROUTE_ORDERS = "DUPLICATE_ROUTE_ORDERS"
    ORDERS_NOT_ROUTABLE = "ORDERS_NOT_ROUTABLE"
    ORDERS_IN_ACTIVE_ROUTE = "ORDERS_IN_ACTIVE_ROUTE"
    ORDER_ASSIGNED_TO_OTHER_COURIER = "ORDER_ASSIGNED_TO_OTHER_COURIER"
    INVALID_ALTERNATE_SEQUENCE = "INVALID_ALTERNATE_SEQUENCE"
    INVALID_FINISH_REQUEST = "INVALID_FINISH_REQUEST"
    INVALID_COORDINATES = "INVALID_COORDINATES"
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # Permission
    NOT_DELIVERY_OWNER = "NOT_DELIVERY_OWNER"
    NOT_ROUTE_OWNER = "NOT_ROUTE_OWNER"
    ELEVATED_ROLE_REQUIRED = "ELEVATED_ROLE_REQUIRED"

    # State conflicts
    ORDER_NOT_ASSIGNABLE = "ORDER_NOT_ASSIGNABLE"
    ORDER_STATUS_REGRESSION = "ORDER_STATUS_REGRESSION"
    DELIVERY_TERMINAL = "DELIVERY_TERMINAL"
    INVALID_DELIVERY_TRANSITION = "INVALID_DELIVERY_TRANSITION"
    ROUTE_NOT_STARTABLE = "ROUTE_NOT_STARTABLE"
    ROUTE_NOT_IN_PROGRESS = "ROUTE_NOT_IN_PROGRESS"
    ROUTE_NOT_MODIFIABLE = "ROUTE_NOT_MODIFIABLE"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    # Infrastructure
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    REPOSITORY_ERROR = "REPOSITORY_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class DispatchError(Exception):
    """Base exception for every dispatch failure surfaced to callers."""

    status_code: int = 500
    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[Union[ErrorCode, str]] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        code = code or self.default_code
        self.code: str = code.value if isinstance(code, Enum) else code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.context,
        }


class NotFoundError(DispatchError):
    """Referenced order, courier, delivery or route does not exist."""

    status_code = 404
    default_code = ErrorCode.ORDER_NOT_FOUND


class ValidationFailedError(DispatchError):
    """Malformed or inconsistent input."""

    status_code = 400
    default_code = ErrorCode.INVALID_FINISH_REQUEST


class PermissionDeniedError(DispatchError):
    """Actor is neither the owning courier nor an elevated role."""

    status_code = 403
    default_code = ErrorCode.NOT_DELIVERY_OWNER


class StateConflictError(DispatchError):
    """Operation attempted against an entity not in an eligible state."""

    status_code = 409
    default_code = ErrorCode.CONCURRENT_MODIFICATION


class UpstreamUnavailableError(DispatchError):
    """
    Mapping provider call failed.

    Raised inside provider adapters only; the geo service converts it into
    an absent result before it reaches business logic.
    """

    status_code = 502
    default_code = ErrorCode.UPSTREAM_UNAVAILABLE


class RepositoryError(DispatchError):
    """Unexpected persistence failure."""

    status_code = 500
    default_code = ErrorCode.REPOSITORY_ERROR
