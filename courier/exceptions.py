"""Custom exception hierarchy for courier."""


class CourierError(Exception):
    """Base exception for courier."""
    pass


class TransientStoreError(CourierError):
    """Raised when the Outbox Store is unreachable or answers with a server error."""
    pass


class ObjectStoreError(TransientStoreError):
    """Raised when an upload to the object store fails."""
    pass


class ChannelSendError(CourierError):
    """Raised when the messaging channel rejects or fails a delivery attempt.

    ``retryable`` is informational: every failed attempt counts against
    max_attempts, but permanent failures are logged differently.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class FatalConfigError(CourierError):
    """Raised at startup when required configuration is missing."""
    pass
