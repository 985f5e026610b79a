"""Domain-specific exceptions."""


class ServiceError(Exception):
    code = "SERVICE_ERROR"


class NotFoundError(ServiceError):
    code = "NOT_FOUND"


class CallNotFound(NotFoundError):
    code = "CALL_NOT_FOUND"


class ListenerNotFound(NotFoundError):
    code = "LISTENER_NOT_FOUND"


class UserNotFound(NotFoundError):
    code = "USER_NOT_FOUND"


class Forbidden(ServiceError):
    code = "FORBIDDEN"


class ValidationError(ServiceError):
    code = "VALIDATION_ERROR"


class InvalidStatus(ValidationError):
    code = "INVALID_STATUS"


class InvalidReportType(ValidationError):
    code = "INVALID_REPORT_TYPE"


class InvalidRating(ValidationError):
    code = "INVALID_RATING"


class InvalidRate(ValidationError):
    code = "INVALID_RATE"


class ConflictError(ServiceError):
    code = "CONFLICT"


class ListenerBusy(ConflictError):
    code = "LISTENER_BUSY"


class DuplicateReport(ConflictError):
    code = "DUPLICATE_REPORT"


class DuplicateRating(ConflictError):
    code = "DUPLICATE_RATING"


class ListenerUnavailable(ServiceError):
    code = "LISTENER_UNAVAILABLE"


class ListenerNotApproved(ServiceError):
    code = "LISTENER_NOT_APPROVED"


class NoListenerAvailable(ServiceError):
    code = "NO_LISTENER_AVAILABLE"


class InsufficientBalance(ServiceError):
    code = "INSUFFICIENT_BALANCE"


class SubscriptionError(ServiceError):
    pass


class RateLimitExceeded(ServiceError):
    code = "DAILY_LIMIT"
