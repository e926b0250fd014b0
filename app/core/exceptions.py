"""
Custom Exception Hierarchy

Business outcomes of order transitions are returned as tagged results,
not raised. The exceptions below cover infrastructure failures, broken
invariants and the REST surface.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    NOT_FOUND = "ERR_1002"

    # Order errors (2xxx)
    ORDER_NOT_FOUND = "ERR_2001"
    ORDER_INVALID_STATUS = "ERR_2002"
    ORDER_ACTIVE_LIMIT = "ERR_2003"
    ORDER_INCONSISTENT_TRANSITION = "ERR_2004"

    # Storage errors (3xxx)
    STORE_UNAVAILABLE = "ERR_3001"

    # External service errors (5xxx)
    TELEGRAM_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


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


class OrderException(AppException):
    """Base exception for order-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        order_id: int | None = None,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if order_id:
            self.details["order_id"] = order_id


class OrderNotFoundError(OrderException):
    """Raised by the REST surface when an order does not exist"""

    def __init__(self, order_id: int):
        super().__init__(
            message=f"Order not found: {order_id}",
            error_code=ErrorCode.ORDER_NOT_FOUND,
            order_id=order_id,
            status_code=404,
        )


class OrderStateError(OrderException):
    """Raised by the REST surface when an order cannot take the requested action"""

    def __init__(self, order_id: int, current_status: str, action: str):
        super().__init__(
            message=f"Order {order_id} has status '{current_status}', cannot {action}",
            error_code=ErrorCode.ORDER_INVALID_STATUS,
            order_id=order_id,
            status_code=409,
            details={"current_status": current_status, "action": action},
        )


class ActiveOrderLimitError(OrderException):
    """Raised when the single-active-order index rejects a claim"""

    def __init__(self, order_id: int, executor_id: int):
        super().__init__(
            message=f"Executor {executor_id} already holds an active order",
            error_code=ErrorCode.ORDER_ACTIVE_LIMIT,
            order_id=order_id,
            status_code=409,
            details={"executor_id": executor_id},
        )


class InconsistentTransitionError(OrderException):
    """
    A conditional update returned no row right after the locked re-check
    accepted it. This is a logic bug, not a race, and must surface.
    """

    def __init__(self, order_id: int, transition: str):
        super().__init__(
            message=f"Order {order_id}: conditional '{transition}' update matched no row under lock",
            error_code=ErrorCode.ORDER_INCONSISTENT_TRANSITION,
            order_id=order_id,
            status_code=500,
            details={"transition": transition},
        )


class StoreUnavailableError(AppException):
    """Raised when the order store cannot be reached; the transaction is rolled back"""

    def __init__(self, operation: str, error: str | None = None):
        super().__init__(
            message=f"Order store unavailable during {operation}",
            error_code=ErrorCode.STORE_UNAVAILABLE,
            status_code=503,
            details={"operation": operation, "error": error},
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


class TelegramError(ExternalServiceException):
    """Raised when Telegram API fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="telegram",
            message=f"Telegram API error: {message}",
            error_code=ErrorCode.TELEGRAM_ERROR,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "TelegramError":
        """
        יצירת TelegramError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: sendMessage, deleteMessage)
            response: אובייקט response (למשל httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


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
