from __future__ import annotations


class LimitExceeded(RuntimeError):
    """Raised when a rate limit or an anonymous message budget is exhausted."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        limit: int | None = None,
        remaining: int = 0,
        reset: int | None = None,
    ):
        self.limit = limit
        self.remaining = remaining
        self.reset = reset
        super().__init__(message)


class ThreadAccessDenied(RuntimeError):
    """Raised when the caller does not own the thread it addresses."""

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Access to thread '{thread_id}' denied")


class OperationInProgress(RuntimeError):
    """Raised when another worker holds the lease for the same operation."""

    def __init__(self, lease_name: str):
        self.lease_name = lease_name
        super().__init__(f"Operation '{lease_name}' is already in progress")


class ThreadNotFound(LookupError):
    """Raised when a turn or reply addresses a thread the store does not know."""

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Thread '{thread_id}' not found")


class InvalidSessionId(ValueError):
    """Raised when a session id is not of the `anon_<uuid4>` form."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Invalid session id")


class InvalidShareToken(ValueError):
    def __init__(self, token: str):
        self.token = token
        super().__init__("Invalid share token format")


class ShareLinkNotFound(LookupError):
    def __init__(self, token: str):
        self.token = token
        super().__init__("Share link not found or expired")


__all__ = [
    "InvalidSessionId",
    "InvalidShareToken",
    "LimitExceeded",
    "OperationInProgress",
    "ShareLinkNotFound",
    "ThreadAccessDenied",
    "ThreadNotFound",
]
