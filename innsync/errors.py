from __future__ import annotations


class InnsyncError(RuntimeError):
    pass


class FeedFetchError(InnsyncError):
    def __init__(self, message: str, *, status_code: int | None = None, transient: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class FeedParseError(InnsyncError):
    pass


class ConcurrentUpdateError(InnsyncError):
    """The booking changed underneath us twice in a row."""


class RoomUnavailableError(InnsyncError):
    pass
