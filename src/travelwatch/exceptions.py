# =============================================================================
# TravelWatch - Exceptions
# =============================================================================
"""
Error hierarchy for the fraud signal engine.

Every error is local and recoverable: the service logs it, counts it and
moves on to the next event.

    Exception
    └── TravelWatchError
        ├── MalformedEvent          (normalizer rejected a payload)
        ├── BufferOverflow          (per-key hard cap hit, surfaced as warning)
        ├── EnrichmentError         (pair violates enrichment preconditions)
        ├── InvalidConfigurationError
        ├── AccountLookupError
        │   ├── AccountNotFound
        │   └── AccountLookupTimeout
        └── PublishError            (output sink failure)
"""

from __future__ import annotations


class TravelWatchError(Exception):
    """
    Base class for all TravelWatch errors.

    Args:
        message: Human readable message with as much context as possible
        cause: Original exception, attached as ``__cause__``
    """

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.__cause__:
            return f"{self.message} (Caused by: {self.__cause__})"
        return self.message


class MalformedEvent(TravelWatchError):
    """A raw transaction payload is missing a field or has an invalid one."""

    def __init__(self, field: str, reason: str, cause: Exception | None = None) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Malformed event: field '{field}' {reason}", cause=cause)


class BufferOverflow(TravelWatchError):
    """
    A key's window buffer went over its hard cap.

    Never raised by the buffer. It is logged as a warning and handed to the
    overflow callback so operators can spot stalled watermarks.
    """

    def __init__(self, account_id: str, dropped: int, cap: int) -> None:
        self.account_id = account_id
        self.dropped = dropped
        self.cap = cap
        super().__init__(
            f"Buffer overflow for account {account_id}: "
            f"evicted {dropped} oldest transaction(s) (cap={cap})"
        )


class EnrichmentError(TravelWatchError):
    """A pair reached enrichment without satisfying its preconditions."""


class InvalidConfigurationError(TravelWatchError):
    """Engine parameters are inconsistent (e.g. retention shorter than window)."""


class AccountLookupError(TravelWatchError):
    """The account lookup backend failed."""


class AccountNotFound(AccountLookupError):
    """No account metadata exists for the key."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class AccountLookupTimeout(AccountLookupError):
    """The account lookup did not answer within its time budget."""

    def __init__(self, account_id: str, timeout: float, cause: Exception | None = None) -> None:
        self.account_id = account_id
        self.timeout = timeout
        super().__init__(
            f"Account lookup for {account_id} timed out after {timeout:.3f}s",
            cause=cause,
        )


class PublishError(TravelWatchError):
    """A fraud candidate could not be handed to the output sink."""
