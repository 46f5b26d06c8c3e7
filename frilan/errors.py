"""
Typed errors raised by the services and rendered by the API.

Every error carries a machine-readable ``kind`` and an HTTP ``status_code``;
the Flask error handler turns them into ``{"error": kind, "message": ...}``.
"""


class FrilanError(Exception):
    """Base class for all user-visible errors."""
    status_code: int = 500
    kind: str = "InternalError"
    default_message = "Internal server error"

    def __init__(self, message: str = None, details: dict = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {'error': self.kind, 'message': self.message}
        if self.details:
            body['details'] = self.details
        return body


class ValidationError(FrilanError):
    """Malformed or out-of-constraint input."""
    status_code = 400
    kind = "ValidationError"
    default_message = "Invalid input"


class UnauthorizedError(FrilanError):
    status_code = 401
    kind = "UnauthorizedError"
    default_message = "Authentication is required"


class ForbiddenError(FrilanError):
    """Caller lacks the required role or ownership."""
    status_code = 403
    kind = "ForbiddenError"
    default_message = "Not enough privilege"


class NotFoundError(FrilanError):
    status_code = 404
    kind = "NotFoundError"
    default_message = "Resource not found"


class ConflictError(FrilanError):
    """Duplicate unique field, e.g. a username or a short name."""
    status_code = 409
    kind = "ConflictError"
    default_message = "Resource already exists"


class StateError(FrilanError):
    """Operation incompatible with the current state of a tournament."""
    status_code = 400
    kind = "StateError"
    default_message = "Operation not allowed in the current state"


class UserNotFoundError(NotFoundError):
    default_message = "This user does not exist"


class EventNotFoundError(NotFoundError):
    default_message = "This event does not exist"


class RegistrationNotFoundError(NotFoundError):
    default_message = "This registration does not exist"


class TournamentNotFoundError(NotFoundError):
    default_message = "This tournament does not exist"


class TeamNotFoundError(NotFoundError):
    default_message = "This team does not exist"


class TournamentStartedError(StateError):
    default_message = "This tournament has already started"


class AdminRemovedError(ForbiddenError):
    default_message = "This action is forbidden because it would remove the only administrator"
