"""Channel-manager client interfaces and implementations."""

from .base import (
    BaseChannelClient, ChannelServiceError, AuthenticationError, RateLimitError,
    TransientChannelError, ChannelValidationError, MappingNotFoundError,
    BookingNotFoundError, SyncDisabledError, is_retryable
)
from .rest import RestChannelClient

__all__ = [
    'BaseChannelClient',
    'ChannelServiceError',
    'AuthenticationError',
    'RateLimitError',
    'TransientChannelError',
    'ChannelValidationError',
    'MappingNotFoundError',
    'BookingNotFoundError',
    'SyncDisabledError',
    'is_retryable',
    'RestChannelClient',
    'create_client',
]


def create_client(context, settings) -> BaseChannelClient:
    """Build the client for a resolved channel context.

    Raises:
        SyncDisabledError: If the master sync switch is off
    """
    if not context.sync_enabled:
        raise SyncDisabledError(f"Sync is disabled for {context.channel}")
    return RestChannelClient(context, settings)
