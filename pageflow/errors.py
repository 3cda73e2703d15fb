from __future__ import annotations


class PageflowError(Exception):
    """Base class for every error raised by pageflow."""


class InvalidPlan(PageflowError):
    pass


class ActionError(PageflowError):
    """A failure local to a single action. Recorded, never raised out of a plan."""


class ElementNotFound(ActionError):
    def __init__(self, selector: str, detail: str | None = None) -> None:
        self.selector = selector
        message = f"No element matches selector: {selector}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ActionTimeout(ActionError):
    def __init__(self, timeout_ms: int, what: str = "action") -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Timeout {timeout_ms}ms exceeded waiting for {what}")


class DriverError(PageflowError):
    """The driver rejected a call for a reason unrelated to the session's health."""


class SessionLost(PageflowError):
    """The session is no longer usable (browser closed, transport gone)."""


class NavigationInterrupted(SessionLost):
    """The document's execution context was destroyed by a navigation."""


class CacheError(PageflowError):
    pass


class CacheWriteFailure(CacheError):
    pass


class CacheReadFailure(CacheError):
    pass


class AbortedByCancellation(Exception):
    """Raised when an external cancel signal fires. Neither an error nor a success."""
