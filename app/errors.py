"""
Error taxonomy shared by the Last.fm clients, the session state machine and
the poll loop.

Every error carries an ErrorKind so it can be attached to a session as a
SessionError. `transient` errors keep the poll loop scheduled; the others
either reject a single command or halt the session.
"""

from models import ErrorKind


class LassoError(Exception):
    kind = ErrorKind.UNKNOWN
    transient = False


# Rejections of a single command; session state is left untouched
class InvalidUsernameError(LassoError):
    kind = ErrorKind.INVALID_USERNAME


class UnknownUserError(LassoError):
    kind = ErrorKind.UNKNOWN_USER


class InvalidTransitionError(LassoError):
    kind = ErrorKind.INVALID_TRANSITION


# Per-cycle failures; the next good cycle clears them
class RateLimitedError(LassoError):
    kind = ErrorKind.RATE_LIMITED
    transient = True


class NetworkError(LassoError):
    kind = ErrorKind.NETWORK
    transient = True


class RequestTimeoutError(NetworkError):
    kind = ErrorKind.TIMEOUT


class LastFMUnknownError(LassoError):
    kind = ErrorKind.UNKNOWN
    transient = True


# Sink credentials rejected; the user must re-authenticate
class UnauthorizedError(LassoError):
    kind = ErrorKind.UNAUTHORIZED
