class RoleSwitchError(Exception):
    """Base exception for RoleSwitch.

    Every subclass is a local, recoverable failure reported to the caller.
    ``status_code`` is the HTTP status the API layer answers with.
    """

    status_code = 500


class NotFoundError(RoleSwitchError):
    """Raised when a role, note, session, API key or sync endpoint is absent."""

    status_code = 404

    def __init__(self, kind: str, identifier: str | None = None):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found")


class LockViolationError(RoleSwitchError):
    """Raised when switch/end is attempted inside the lock window."""

    status_code = 423

    def __init__(self, remaining_seconds: int):
        self.remaining_seconds = remaining_seconds
        super().__init__(f"Session is locked for {remaining_seconds} more seconds")


class AuthFailureError(RoleSwitchError):
    """Raised when a request carries a missing/invalid key, a bad signature or a stale timestamp."""

    status_code = 401


class PermissionDeniedError(AuthFailureError):
    """Raised when a valid key lacks the permission a route requires."""

    status_code = 403


class ValidationFailureError(RoleSwitchError):
    """Raised for missing fields, malformed bodies and transitions not allowed from the current state."""

    status_code = 400


class SyncFailureError(RoleSwitchError):
    """Raised when exchanging a snapshot with one sync endpoint fails."""

    status_code = 502

    def __init__(self, endpoint_name: str, reason: str):
        self.endpoint_name = endpoint_name
        self.reason = reason
        super().__init__(f"Sync with '{endpoint_name}' failed: {reason}")
