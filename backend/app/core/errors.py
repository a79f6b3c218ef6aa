"""Error kinds raised by the referral services.

Every error carries the HTTP status it maps to and a short machine code so
route handlers never need to inspect message text. ``StorageError`` is
rendered generically; its message is only logged.
"""


class ServiceError(Exception):
    status_code = 500
    code = "service_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message())
        self.message = message or self.default_message()

    @classmethod
    def default_message(cls) -> str:
        return cls.__doc__.strip() if cls.__doc__ else cls.code


class ValidationError(ServiceError):
    """Invalid request"""

    status_code = 400
    code = "validation_error"


class InvalidReferralCodeFormat(ValidationError):
    """Invalid referral code format"""

    code = "invalid_format"


class NotFoundError(ServiceError):
    """Not found"""

    status_code = 404
    code = "not_found"


class ReferralCodeNotFound(NotFoundError):
    """Invalid or inactive referral code"""

    code = "code_not_found"


class ReferrerMissing(NotFoundError):
    """Referrer not found"""

    code = "referrer_missing"


class ReferralNotFoundOrCompleted(NotFoundError):
    """Referral not found or already completed"""

    code = "not_found_or_completed"


class ConflictError(ServiceError):
    """Conflicting state"""

    status_code = 409
    code = "conflict"


class DuplicateRowError(ConflictError):
    """Row violates a uniqueness constraint"""

    code = "duplicate_row"


class AlreadyReferred(ConflictError):
    """This email has already been referred"""

    code = "already_referred"


class SelfReferral(ConflictError):
    """Cannot redeem your own referral code"""

    code = "self_referral"


class ExpiredError(ServiceError):
    """Expired"""

    status_code = 410
    code = "expired"


class ReferralExpired(ExpiredError):
    """Referral has expired"""


class StorageError(ServiceError):
    """Storage operation failed"""

    status_code = 500
    code = "storage_error"


class AuthRequired(ServiceError):
    """Authentication required"""

    status_code = 401
    code = "auth_required"

    def __init__(self, message: str = "", *, reason: str = "invalid") -> None:
        super().__init__(message)
        self.reason = reason


class PermissionDenied(ServiceError):
    """Admin access required"""

    status_code = 403
    code = "permission_denied"
