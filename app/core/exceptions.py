"""
Custom Exception Hierarchy

Structured exceptions shared by the services and the API layer. Every error
carries a stable ``ErrorCode`` and an HTTP status so the exception handlers in
``app.core.middleware`` can render them uniformly.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    CONFLICT = "ERR_1006"

    # Order errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2001"
    ORDER_ALREADY_ASSIGNED = "ERR_2002"
    ORDER_STALE_STATE = "ERR_2003"
    ORDER_OUTSIDE_SERVICE_AREA = "ERR_2004"
    ORDER_INVALID_STATUS = "ERR_2005"
    NEGOTIATION_CONFLICT = "ERR_2006"
    OTP_ALREADY_ISSUED = "ERR_2007"
    OTP_EXPIRED = "ERR_2008"
    OTP_MISMATCH = "ERR_2009"

    # User errors (3xxx)
    USER_NOT_FOUND = "ERR_3001"
    ACCOUNT_BLOCKED = "ERR_3002"
    USER_ALREADY_EXISTS = "ERR_3003"
    INVALID_USER_ROLE = "ERR_3004"
    CREDENTIALS_BLOCKED = "ERR_3005"

    # Wallet / ledger errors (4xxx)
    WALLET_NOT_FOUND = "ERR_4001"
    INSUFFICIENT_BALANCE = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"
    SETTLEMENT_ALREADY_POSTED = "ERR_4004"
    PAYOUT_NOT_FOUND = "ERR_4005"
    PAYMENT_CONFIRMATION_INVALID = "ERR_4006"

    # External service errors (5xxx)
    DISTANCE_PROVIDER_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class PermissionDeniedError(AppException):
    """Raised when the actor's role or ownership does not allow the action"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details
        )


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class OrderNotFoundError(NotFoundException):
    def __init__(self, order_id: int | str):
        super().__init__("Order", order_id, ErrorCode.ORDER_NOT_FOUND)


class PayoutNotFoundError(NotFoundException):
    def __init__(self, payout_id: int | str):
        super().__init__("Payout", payout_id, ErrorCode.PAYOUT_NOT_FOUND)


class UserNotFoundError(NotFoundException):
    def __init__(self, user_id: int | str):
        super().__init__("User", user_id, ErrorCode.USER_NOT_FOUND)


class ConflictException(AppException):
    """
    Base for retryable conflicts: a concurrent writer won, or the caller acted
    on state that has since moved on. Never resolved silently.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.CONFLICT,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class OrderAlreadyAssignedError(ConflictException):
    """Raised when the accept compare-and-swap loses the race"""

    def __init__(self, order_id: int):
        super().__init__(
            message=f"Order {order_id} has already been assigned",
            error_code=ErrorCode.ORDER_ALREADY_ASSIGNED,
            details={"order_id": order_id}
        )


class StaleOrderStateError(ConflictException):
    """Raised when the order changed under the caller (late negotiation response, version mismatch)"""

    def __init__(self, order_id: int, current_status: str | None = None):
        details: dict[str, Any] = {"order_id": order_id}
        if current_status:
            details["current_status"] = current_status
        super().__init__(
            message=f"Order {order_id} changed state before this action could be applied",
            error_code=ErrorCode.ORDER_STALE_STATE,
            details=details
        )


class NegotiationConflictError(ConflictException):
    def __init__(self, order_id: int, message: str = "A price change request is already outstanding"):
        super().__init__(
            message=message,
            error_code=ErrorCode.NEGOTIATION_CONFLICT,
            details={"order_id": order_id}
        )


class OtpAlreadyIssuedError(ConflictException):
    def __init__(self, order_id: int):
        super().__init__(
            message=f"A delivery code for order {order_id} is still active",
            error_code=ErrorCode.OTP_ALREADY_ISSUED,
            details={"order_id": order_id}
        )


class OtpExpiredError(ValidationException):
    def __init__(self, order_id: int):
        super().__init__(
            message="Delivery code has expired",
            details={"order_id": order_id},
            error_code=ErrorCode.OTP_EXPIRED,
        )


class OtpMismatchError(ValidationException):
    def __init__(self, order_id: int):
        super().__init__(
            message="Delivery code does not match",
            details={"order_id": order_id},
            error_code=ErrorCode.OTP_MISMATCH,
        )


class OutsideServiceAreaError(ValidationException):
    def __init__(self, point: str, lat: float, lng: float):
        super().__init__(
            message=f"The {point} location is outside the service area",
            field=point,
            details={"lat": lat, "lng": lng},
            error_code=ErrorCode.ORDER_OUTSIDE_SERVICE_AREA,
        )


class AccountBlockedError(AppException):
    """Raised when a payment-blocked or deactivated rider attempts an action"""

    def __init__(self, user_id: int, reason: str | None = None):
        super().__init__(
            message=reason or "Account is blocked",
            error_code=ErrorCode.ACCOUNT_BLOCKED,
            status_code=403,
            details={"user_id": user_id}
        )


class CredentialsBlockedError(AppException):
    def __init__(self):
        super().__init__(
            message="These credentials are associated with a blocked account",
            error_code=ErrorCode.CREDENTIALS_BLOCKED,
            status_code=403,
        )


class StateMachineException(AppException):
    """Base exception for state machine errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INVALID_STATE_TRANSITION,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details=details
        )


class InvalidStateTransitionError(StateMachineException):
    """Raised when an order transition is not allowed from its current status"""

    def __init__(self, order_id: int, current_status: str, target_status: str):
        super().__init__(
            message=f"Order {order_id} cannot move from '{current_status}' to '{target_status}'",
            details={
                "order_id": order_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


class LedgerException(AppException):
    """Base for money invariants: these hard-fail and leave state unchanged"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=422,
            details=details
        )


class InsufficientBalanceError(LedgerException):
    def __init__(self, user_id: int, balance: int, amount: int):
        super().__init__(
            message=f"Insufficient wallet balance for user {user_id}",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            details={"user_id": user_id, "balance": balance, "amount": amount}
        )


class InvalidAmountError(LedgerException):
    def __init__(self, amount: Any):
        super().__init__(
            message=f"Invalid amount: {amount}",
            error_code=ErrorCode.INVALID_AMOUNT,
            details={"amount": str(amount)}
        )


class SettlementAlreadyPostedError(LedgerException):
    def __init__(self, order_id: int):
        super().__init__(
            message=f"Order {order_id} has already been settled",
            error_code=ErrorCode.SETTLEMENT_ALREADY_POSTED,
            details={"order_id": order_id}
        )


class PaymentConfirmationError(AppException):
    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code=ErrorCode.PAYMENT_CONFIRMATION_INVALID,
            status_code=400,
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class DistanceProviderError(ExternalServiceException):
    """Raised when the routing service fails or returns no route"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="distance_provider",
            message=f"Distance provider error: {message}",
            error_code=ErrorCode.DISTANCE_PROVIDER_ERROR,
            details=details
        )

    @classmethod
    def from_response(cls, response: Any, *, max_response_chars: int = 500) -> "DistanceProviderError":
        """בניית שגיאה עקבית מתוך HTTP response"""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"routing returned status {status_code}",
            details={
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class NoRouteFoundError(DistanceProviderError):
    """The provider answered, but has no driving route between the points"""

    def __init__(self, details: dict[str, Any] | None = None):
        super().__init__("no route found", details=details)


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
