"""Exception types shared by the store, scheduler and adapters."""

from __future__ import annotations


class NotFound(KeyError):
    """No record with the requested kind and key."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind}[{key}]")
        self.kind = kind
        self.key = key


class StaleWriteError(RuntimeError):
    """Remote data is older than what is already stored."""


class FetchError(RuntimeError):
    """A remote service call failed or returned an unusable payload."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ShapeError(FetchError):
    """A single remote record is missing expected fields."""


class MigrationError(RuntimeError):
    pass


class WindowError(RuntimeError):
    """The poll window cannot be narrowed any further."""


class RegistrationError(RuntimeError):
    pass


class MoreWork(Exception):
    """Raised by a cron job that stopped early and wants to run again now."""


class RetryTask(Exception):
    """Raised by a task function to be retried after the queue's backoff."""
