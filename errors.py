"""Exception hierarchy for the WikiPath session service."""
from typing import Any


class WikiPathError(Exception):
    """Base exception for all WikiPath errors.

    Keyword arguments are kept as attributes so handlers can report them.
    """

    def __init__(self, message: str = "", **kwargs: Any) -> None:
        if not message:
            message = self.__class__.__doc__ or "WikiPath error occurred"
        super().__init__(message)
        for key, value in kwargs.items():
            setattr(self, key, value)


class StoreError(WikiPathError):
    """The persistent store could not be read or written."""

    def __init__(self, message: str = "", **kwargs: Any) -> None:
        if not message:
            message = "The persistent store could not be read or written"
        super().__init__(message, **kwargs)


class SessionNotFoundError(WikiPathError):
    """No active or archived session matches the requested identifier."""

    def __init__(self, session_id: str, **kwargs: Any) -> None:
        super().__init__(f"Session not found: {session_id}", session_id=session_id, **kwargs)


class DispatcherNotRunning(WikiPathError):
    """The event dispatcher is not accepting messages."""

    def __init__(self, message: str = "", **kwargs: Any) -> None:
        if not message:
            message = "The event dispatcher is not accepting messages"
        super().__init__(message, **kwargs)
