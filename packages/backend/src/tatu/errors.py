"""Error taxonomy shared by the REST routes and the realtime gateway.

Each error carries the HTTP status the REST layer answers with. The
realtime gateway turns the same errors into a scoped `error` event.
"""


class MessagingError(Exception):
    """Base class for every expected messaging failure."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidParticipants(MessagingError):
    """Self-messaging or a malformed user pair."""

    status_code = 400


class InvalidContent(MessagingError):
    """Empty message body."""

    status_code = 400


class AccessDenied(MessagingError):
    """Non-participant reading/marking, or non-sender deleting."""

    status_code = 403


class NotFound(MessagingError):
    status_code = 404


class Conflict(MessagingError):
    status_code = 409


class AuthFailure(MessagingError):
    """Bad or expired credential. Fatal to a realtime connection."""

    status_code = 401
