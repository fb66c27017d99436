"""Error taxonomy for the simulator's protocol flows.

The store, code generator and token issuer signal failure by returning
None/False. Only the flow controller (simulator.service) raises these, and the
HTTP layer renders them as ``{"error": ..., "error_description": ...}``.
"""


class SimulatorError(Exception):
    """Base class for errors mapped to an HTTP status and OAuth error code."""

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequest(SimulatorError):
    """A mandatory parameter is missing or malformed (400)."""
    status_code = 400
    error_code = "invalid_request"


class NotFound(SimulatorError):
    """Lookup by email, user id or token found nothing (404)."""
    status_code = 404
    error_code = "not_found"


class InvalidGrant(SimulatorError):
    """Unknown, expired or already-redeemed code or refresh token (400)."""
    status_code = 400
    error_code = "invalid_grant"


class UnsupportedGrantType(InvalidGrant):
    error_code = "unsupported_grant_type"


class UnsupportedResponseType(InvalidRequest):
    error_code = "unsupported_response_type"


class Unauthenticated(SimulatorError):
    """Bearer or basic credentials missing or unresolvable (401)."""
    status_code = 401
    error_code = "unauthorized"


class Conflict(SimulatorError):
    """Duplicate user id or email on explicit seeding (409)."""
    status_code = 409
    error_code = "conflict"
