"""Domain errors raised by the dispatch and settlement services

Each error carries the HTTP status it maps to and a stable error code so the
API layer can render it without knowing about individual services.
"""

from typing import Any


class InstantPhotoError(Exception):
    """Base class for business-rule failures"""

    status_code = 400
    error_code = "instant_photo_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.message, **self.details}


class ValidationError(InstantPhotoError):
    status_code = 422
    error_code = "validation_error"

    def __init__(self, message: str, field: str | None = None, **details: Any):
        super().__init__(message, field=field, **details)
        self.field = field


class UsageLimitExceeded(InstantPhotoError):
    status_code = 429
    error_code = "usage_limit_exceeded"


class NoCandidatesAvailable(InstantPhotoError):
    status_code = 409
    error_code = "no_candidates_available"


class AlreadyMatched(InstantPhotoError):
    status_code = 409
    error_code = "already_matched"


class RequestExpired(InstantPhotoError):
    status_code = 410
    error_code = "request_expired"


class InvalidStateTransition(InstantPhotoError):
    status_code = 409
    error_code = "invalid_state_transition"


class PaymentAuthorizationFailed(InstantPhotoError):
    status_code = 402
    error_code = "payment_authorization_failed"


class PaymentCaptureFailed(InstantPhotoError):
    status_code = 502
    error_code = "payment_capture_failed"


class ExternalServiceUnavailable(InstantPhotoError):
    status_code = 503
    error_code = "external_service_unavailable"


class NotFound(InstantPhotoError):
    status_code = 404
    error_code = "not_found"


class PermissionDenied(InstantPhotoError):
    status_code = 403
    error_code = "permission_denied"


class DataIntegrityError(InstantPhotoError):
    """Persisted state violates an invariant; never auto-corrected"""

    status_code = 500
    error_code = "data_integrity_error"
