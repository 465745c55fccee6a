"""Exception hierarchy shared by the Feed Relay services."""

from __future__ import annotations


class FeedRelayError(RuntimeError):
    """Base exception raised for Feed Relay failures.

    Background loops catch this type, log it and back off instead of letting
    it reach the event loop.
    """


class LeaseError(FeedRelayError):
    """Base class for coordination failures around the session lease."""


class LeaseNotHeldError(LeaseError):
    """Raised when an operation needs the session lease but this instance lacks it."""


class LeaseConflictError(LeaseError):
    """Raised when a forced takeover could not persist the new owner.

    A takeover that affects zero rows is never treated as a success.
    """


class SendError(FeedRelayError):
    """Base exception for failures reported by the message sender."""

    retriable: bool = True


class RetriableSendError(SendError):
    """Transient send failure (timeout, network error, rate limit).

    The dispatch entry is marked failed and becomes eligible for retry while
    its retry count stays under the configured bound.
    """

    retriable = True


class PermanentSendError(SendError):
    """Send failure that will not succeed on retry.

    Raised for invalid destinations, rejected content or empty renders. The
    dispatch entry moves straight to terminal ``failed``.
    """

    retriable = False


class FeedFetchError(FeedRelayError):
    """Raised when a content source cannot be fetched or parsed."""


class UnsafeURLError(FeedFetchError):
    """Raised when an outbound URL targets a forbidden scheme, host or address."""


class AutomationNotFoundError(FeedRelayError):
    """Raised when an automation id does not resolve to a row."""


class InvalidTransitionError(FeedRelayError):
    """Raised when a state change is not allowed from the current state."""
