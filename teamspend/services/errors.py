# ==== DOMAIN ERROR TAXONOMY ==== #

"""
Domain errors raised by TeamSpend services.

Errors that reach the HTTP layer carry a status code and a machine-readable
code; main.py renders them into the standard error envelope. Advisory and
notification errors never leave their adapters.
"""


class TeamSpendError(Exception):
    """Base class for domain errors surfaced to API callers."""

    status_code = 500
    code = "INTERNAL_ERROR"
    error = "Internal server error"

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or message


class NotFoundError(TeamSpendError):
    """Team or expense id did not resolve."""

    status_code = 404
    code = "NOT_FOUND"
    error = "Not found"


class ValidationFailedError(TeamSpendError):
    """Input is well-formed but violates a business rule."""

    status_code = 400
    code = "VALIDATION_ERROR"
    error = "Validation failed"


class InvalidTransitionError(TeamSpendError):
    """Requested status change is not allowed in this form."""

    status_code = 400
    code = "INVALID_TRANSITION"
    error = "Invalid transition"


class LedgerUnavailableError(TeamSpendError):
    """Conflict retries on a team aggregate were exhausted."""

    status_code = 503
    code = "LEDGER_CONFLICT"
    error = "Service temporarily unavailable"


# ==== INTERNAL ERRORS ==== #


class LedgerConflictError(Exception):
    """A compare-and-swap on the team version lost the race."""

    def __init__(self, team_id: int, seen_version: int):
        super().__init__(f"Team {team_id} changed since version {seen_version}")
        self.team_id = team_id
        self.seen_version = seen_version


class AdvisoryUnavailableError(Exception):
    """Advisory provider could not produce an answer."""


class AdvisoryTransientError(AdvisoryUnavailableError):
    """Provider failure worth retrying (5xx, transport trouble)."""


class AdvisoryRateLimitedError(AdvisoryUnavailableError):
    """Provider answered with a rate-limit signal."""


class NotificationError(Exception):
    """Notification could not be delivered."""
