class QuoteError(Exception):
    """Base class for every error the quote service reports to callers."""

    status_code = 400
    code = "quote_error"

    def __init__(self, message, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self):
        payload = {"error": self.code, "message": self.message}
        payload.update(self.extra)
        return payload


class ValidationError(QuoteError):
    status_code = 400
    code = "validation_error"


class PermissionDenied(QuoteError):
    status_code = 403
    code = "permission_denied"


class NotFound(QuoteError):
    status_code = 404
    code = "not_found"


class InvalidTransition(QuoteError):
    status_code = 409
    code = "invalid_transition"


class CooldownActive(QuoteError):
    status_code = 429
    code = "cooldown_active"

    def __init__(self, remaining_seconds):
        minutes, seconds = divmod(int(remaining_seconds), 60)
        super().__init__(
            f"Next refresh available in {minutes}m {seconds}s",
            remaining_seconds=int(remaining_seconds),
        )
        self.remaining_seconds = int(remaining_seconds)


class InvariantViolation(QuoteError):
    status_code = 500
    code = "invariant_violation"


class CollaboratorError(QuoteError):
    status_code = 502
    code = "collaborator_error"


class NotificationError(CollaboratorError):
    code = "notification_error"


class CarrierError(CollaboratorError):
    code = "carrier_error"
