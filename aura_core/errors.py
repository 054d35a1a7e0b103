class AuraError(Exception):
    """Base error for Aura."""

    code = "internal_error"
    http_status = 500


class RecoverableError(AuraError):
    """Indicates the operation can be retried safely."""

    code = "transient"
    http_status = 503


class PermanentError(AuraError):
    """Indicates the operation should not be retried."""


class AuthError(PermanentError):
    """Authentication or authorization failure."""

    code = "unauthorized"
    http_status = 401


class ValidationError(PermanentError):
    """Input validation failure."""

    code = "validation_error"
    http_status = 400


class NotFound(PermanentError):
    code = "not_found"
    http_status = 404


class PayloadTooLarge(PermanentError):
    code = "payload_too_large"
    http_status = 413


class InvalidToken(PermanentError):
    """No unclaimed device matches the bootstrap token."""

    code = "invalid_token"
    http_status = 401


class AlreadyClaimed(PermanentError):
    """The bootstrap token was already consumed."""

    code = "already_claimed"
    http_status = 409


class NotClaimed(PermanentError):
    """The device must be claimed before it can be provisioned."""

    code = "not_claimed"
    http_status = 409


class EmptyFleet(PermanentError):
    """The target fleet has no provisioned devices."""

    code = "empty_fleet"
    http_status = 409


class IllegalTransition(PermanentError):
    """The requested release transition is not legal from its current state."""

    code = "illegal_transition"
    http_status = 409


class DuplicateVersion(PermanentError):
    code = "duplicate_version"
    http_status = 409


class SizeMismatch(PermanentError):
    code = "size_mismatch"
    http_status = 422


class ChecksumMismatch(PermanentError):
    code = "checksum_mismatch"
    http_status = 422


class Corrupt(PermanentError):
    """Stored artifact bytes no longer match their recorded checksum."""

    code = "artifact_corrupt"
    http_status = 500


def error_payload(exc: AuraError) -> dict[str, object]:
    return {"error": {"code": exc.code, "message": str(exc) or exc.code}}
