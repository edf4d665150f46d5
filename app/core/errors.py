"""Application error taxonomy; translated to the JSON error envelope in app/main.py."""


class ErrorCodes:
    # Validation
    INVALID_INPUT_FORMAT = "INVALID_INPUT_FORMAT"
    COURSE_ALREADY_OWNED = "COURSE_ALREADY_OWNED"

    # Auth
    TOKEN_INVALID = "TOKEN_INVALID"
    INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"

    # Not found
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    COURSE_NOT_FOUND = "COURSE_NOT_FOUND"
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    RECONCILIATION_TASK_NOT_FOUND = "RECONCILIATION_TASK_NOT_FOUND"

    # Conflicts
    DUPLICATE_ENTRY = "DUPLICATE_ENTRY"
    ORDER_STATE_CONFLICT = "ORDER_STATE_CONFLICT"
    ORDER_NOT_CANCELLABLE = "ORDER_NOT_CANCELLABLE"
    ORDER_NOT_PAYABLE = "ORDER_NOT_PAYABLE"

    # Coupons
    COUPON_CODE_EXISTS = "COUPON_CODE_EXISTS"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    COUPON_NOT_ACTIVE = "COUPON_NOT_ACTIVE"
    COUPON_USAGE_LIMIT_EXCEEDED = "COUPON_USAGE_LIMIT_EXCEEDED"
    COUPON_NOT_APPLICABLE = "COUPON_NOT_APPLICABLE"
    INVALID_COUPON_CODE = "INVALID_COUPON_CODE"

    # Payments
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    PAYMENT_FLAGGED_FOR_REVIEW = "PAYMENT_FLAGGED_FOR_REVIEW"
    PAYMENT_METHOD_UNAVAILABLE = "PAYMENT_METHOD_UNAVAILABLE"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"

    # General
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


class AppError(Exception):
    status_code = 500
    default_code = ErrorCodes.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, error_code: str | None = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code


class ValidationError(AppError):
    status_code = 400
    default_code = ErrorCodes.INVALID_INPUT_FORMAT


class AuthenticationError(AppError):
    status_code = 401
    default_code = ErrorCodes.TOKEN_INVALID


class AuthorizationError(AppError):
    status_code = 403
    default_code = ErrorCodes.INSUFFICIENT_PERMISSIONS


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 409
    default_code = ErrorCodes.DUPLICATE_ENTRY


class UnprocessableError(AppError):
    status_code = 422
    default_code = ErrorCodes.PAYMENT_FLAGGED_FOR_REVIEW


class RateLimitError(AppError):
    status_code = 429
    default_code = ErrorCodes.RATE_LIMIT_EXCEEDED


class ExternalServiceError(AppError):
    status_code = 502
    default_code = ErrorCodes.GATEWAY_UNAVAILABLE


class WebhookVerificationError(ValidationError):
    """Signature/shape check failed; nothing was persisted, the gateway may retry."""

    default_code = ErrorCodes.INVALID_SIGNATURE
