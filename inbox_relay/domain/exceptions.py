"""Custom exception hierarchy for the inbox relay.

Following error taxonomy: retryable, non-retryable, configuration, rate-limit.
"""


class InboxRelayError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(InboxRelayError):
    """Errors that can be retried (network issues, temporary failures)."""

    pass


class NonRetryableError(InboxRelayError):
    """Errors that should not be retried (configuration, auth, logic errors)."""

    pass


class ConfigurationError(NonRetryableError):
    """Channel configuration is missing or lacks platform credentials."""

    pass


class RateLimitError(RetryableError):
    """Platform rate limit exceeded."""

    def __init__(self, retry_after: float | None = None) -> None:
        """Initialize with optional retry_after seconds."""
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Retry after: {retry_after}s")


class TransientFetchError(RetryableError):
    """Historical query failed for a reason that may clear up on its own."""

    pass


class FatalFetchError(NonRetryableError):
    """Historical query failed permanently (auth revoked, bad request)."""

    pass


class AutoFollowError(RetryableError):
    """Follow-back request to the platform failed."""

    pass


class PersistenceError(RetryableError):
    """Marker store read/write errors."""

    pass
