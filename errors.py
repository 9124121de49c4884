"""Recoverable failures of the claim/spin flow.

Every error carries a stable ``code`` for API clients, the HTTP ``status`` the
blueprints answer with, and a short human-readable ``message``.
"""


class SpinError(Exception):
    code = "SPIN_ERROR"
    status = 400
    default_message = "Request could not be completed"

    def __init__(self, message=None, **details):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(SpinError):
    """Malformed email. User-correctable, never retried automatically."""

    code = "INVALID_EMAIL"
    status = 400
    default_message = "Invalid email"

    def __init__(self, message=None, reason=None):
        super().__init__(message, reason=reason)
        self.reason = reason


class TldUnavailable(SpinError):
    code = "TLD_UNAVAILABLE"
    status = 503
    default_message = "TLD list is not loaded"


class AlreadyClaimed(SpinError):
    code = "ALREADY_CLAIMED"
    status = 409
    default_message = "Already claimed today. Come back tomorrow."

    def __init__(self, message=None, spins_banked=0, code=None):
        super().__init__(message, spinsBanked=int(spins_banked))
        self.spins_banked = int(spins_banked)
        if code:
            self.code = code


class DebounceRejected(SpinError):
    code = "RETRY_LATER"
    status = 429
    default_message = "Please wait a moment."


class NoSpinBanked(SpinError):
    code = "NO_SPIN_BANKED"
    status = 409
    default_message = "No spin available. Confirm your email first."


class StorageUnavailable(SpinError):
    code = "STORAGE_UNAVAILABLE"
    status = 503
    default_message = "Spin storage is unavailable"


class InvalidRotation(SpinError):
    code = "INVALID_ROTATION"
    status = 400
    default_message = "rotation must be a finite number"
