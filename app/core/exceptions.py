"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Every exception carries a ``retryable`` flag that the webhook retry scheduler
reads when deciding between ``failed`` and ``failed_permanent``.
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

    # Webhook intake and processing errors (2xxx)
    WEBHOOK_SIGNATURE_INVALID = "ERR_2001"
    WEBHOOK_EVENT_NOT_FOUND = "ERR_2002"
    WEBHOOK_INVALID_STATUS = "ERR_2003"

    # Dunning errors (3xxx)
    DUNNING_EVENT_NOT_FOUND = "ERR_3001"
    DUNNING_UNKNOWN_STRATEGY = "ERR_3002"
    DUNNING_INVALID_STRATEGY = "ERR_3003"
    DUNNING_INVALID_TRANSITION = "ERR_3004"
    CUSTOMER_NOT_FOUND = "ERR_3005"

    # External service errors (5xxx)
    PAYMENT_GATEWAY_ERROR = "ERR_5001"
    EMAIL_DELIVERY_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    retryable: bool = True

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

    retryable = False

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    retryable = False

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


class WebhookSignatureError(AppException):
    """Raised when an inbound webhook fails signature verification"""

    retryable = False

    def __init__(self, reason: str):
        super().__init__(
            message=f"Invalid webhook signature: {reason}",
            error_code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
            status_code=400,
            details={"reason": reason}
        )


class InvalidWebhookStatusError(AppException):
    """Raised when an operator action does not fit the event's current status"""

    retryable = False

    def __init__(self, event_id: int, current_status: str, required_status: str):
        super().__init__(
            message=f"Webhook event {event_id} has status '{current_status}', required '{required_status}'",
            error_code=ErrorCode.WEBHOOK_INVALID_STATUS,
            status_code=400,
            details={
                "event_id": event_id,
                "current_status": current_status,
                "required_status": required_status,
            }
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


class PaymentGatewayError(ExternalServiceException):
    """Raised when the payment gateway rejects or fails a call"""

    def __init__(
        self,
        operation: str,
        message: str,
        *,
        retryable: bool,
        http_status: int | None = None,
        provider_code: str | None = None,
    ):
        super().__init__(
            service_name="stripe",
            message=f"Payment gateway error during {operation}: {message}",
            error_code=ErrorCode.PAYMENT_GATEWAY_ERROR,
            details={
                "operation": operation,
                "http_status": http_status,
                "provider_code": provider_code,
            }
        )
        self.retryable = retryable
        self.http_status = http_status
        self.provider_code = provider_code
        if not retryable:
            # ה-gateway ענה ודחה את הבקשה
            self.status_code = 400

    @classmethod
    def from_stripe_error(cls, operation: str, error: Exception) -> "PaymentGatewayError":
        """
        Build a PaymentGatewayError from a stripe SDK exception.

        4xx responses are domain rejections (bad request, auth, declined card) and
        are not retryable; network errors, rate limits and 5xx responses are.
        """
        import stripe

        http_status = getattr(error, "http_status", None)
        provider_code = getattr(error, "code", None)

        if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError)):
            retryable = True
        elif isinstance(
            error,
            (
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.CardError,
            ),
        ):
            retryable = False
        elif http_status is not None and 400 <= http_status < 500:
            retryable = False
        else:
            retryable = True

        message = getattr(error, "user_message", None) or str(error) or type(error).__name__
        return cls(
            operation,
            message,
            retryable=retryable,
            http_status=http_status,
            provider_code=provider_code,
        )


class EmailDeliveryError(ExternalServiceException):
    """Raised when the email provider fails"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="email",
            message=f"Email delivery error: {message}",
            error_code=ErrorCode.EMAIL_DELIVERY_ERROR,
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
    ) -> "EmailDeliveryError":
        """
        Build an EmailDeliveryError from an HTTP response.

        Args:
            operation: operation name (e.g. send)
            response: response object (e.g. httpx.Response)
            message: custom message, built from the status code when omitted
            max_response_chars: cap on stored response_text to keep logs small
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


class DunningException(AppException):
    """Base exception for dunning errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )


class UnknownStrategyError(DunningException):
    """Raised when a dunning strategy name is not registered (configuration error)"""

    retryable = False

    def __init__(self, name: str, available: list[str] | None = None):
        super().__init__(
            message=f"Unknown dunning strategy: {name}",
            error_code=ErrorCode.DUNNING_UNKNOWN_STRATEGY,
            details={"strategy": name, "available": sorted(available or [])}
        )


class InvalidStrategyError(DunningException):
    """Raised when a strategy definition is inconsistent"""

    retryable = False

    def __init__(self, name: str, reason: str):
        super().__init__(
            message=f"Invalid dunning strategy '{name}': {reason}",
            error_code=ErrorCode.DUNNING_INVALID_STRATEGY,
            details={"strategy": name, "reason": reason}
        )


class InvalidDunningTransitionError(DunningException):
    """Raised when a dunning event transition is not allowed"""

    retryable = False

    def __init__(self, dunning_event_id: int, current_state: str, target_state: str):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.DUNNING_INVALID_TRANSITION,
            details={
                "dunning_event_id": dunning_event_id,
                "current_state": current_state,
                "target_state": target_state,
            }
        )
