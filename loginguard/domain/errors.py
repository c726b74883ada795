"""Error taxonomy for the login guard."""


class LoginGuardError(Exception):
    """Base class for every error raised by loginguard."""


class StoreUnavailable(LoginGuardError):
    """The attempt store could not be reached, timed out, or stayed contended.

    Never swallowed by the core: the host decides whether to fail open or
    fail closed.
    """


class InvalidIdentifier(LoginGuardError, ValueError):
    """Empty, malformed or over-long identifier."""


class InvalidType(LoginGuardError, ValueError):
    """Identifier type is not one of the recognized kinds."""
