# core/errors.py
import random
from typing import Tuple


class SyncError(Exception):
    """Base class for inventory/price sync failures."""


class CredentialError(SyncError):
    """Steam session cookies are missing, invalid or expired. Re-authenticate, do not retry."""


class RateLimitError(SyncError):
    """Steam answered 429. Back off before retrying."""


class FetchError(SyncError):
    """Generic transient failure; safe to retry."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class EmptyCollectionError(FetchError):
    """The inventory fetch completed but returned no assets."""


class UnauthorizedError(SyncError):
    """The backend rejected the bearer token (HTTP 401)."""


class SyncCancelledError(SyncError):
    """A running sync was cancelled through its cancellation token."""


class SyncInProgressError(SyncError):
    """A sync run is already active on this orchestrator."""


class PartialResultWarning(UserWarning):
    """Pagination stopped before Steam signalled completion."""


_SESSION_EXPIRED_MESSAGES = (
    ("Session expired",
     "Your Steam session expired. Please update your session in Profile and try again."),
    ("Session ended",
     "Steam no longer recognises this session. Sign in to Steam again to keep syncing."),
    ("Reconnect needed",
     "We need a fresh Steam session before syncing. It only takes a moment."),
)


def describe_error(exc: BaseException) -> Tuple[str, str]:
    """Map a sync failure to a (title, message) pair for the user."""
    if isinstance(exc, CredentialError):
        return random.choice(_SESSION_EXPIRED_MESSAGES)
    if isinstance(exc, RateLimitError):
        return (
            "Slow down",
            "Steam is rate limiting requests. Please wait a few minutes and retry.",
        )
    if isinstance(exc, UnauthorizedError):
        return ("Logged out", "Your login expired. Please log in again.")
    if isinstance(exc, EmptyCollectionError):
        return (
            "No items found",
            "No items were found in the inventory. Check that it has items "
            "and that your Steam session is valid.",
        )
    if isinstance(exc, SyncInProgressError):
        return ("Sync running", "A sync is already in progress.")
    if isinstance(exc, SyncCancelledError):
        return ("Sync cancelled", "The sync was cancelled.")
    return ("Error", "Could not update data. Please try again.")
