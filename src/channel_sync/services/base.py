"""Base channel-manager client interface with async support."""

import asyncio
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import logging

from ..models import AvailabilityDay, ChannelBooking, ChannelContext, RateDay
from ..config import Settings

logger = logging.getLogger(__name__)


class ChannelServiceError(Exception):
    """Base exception for channel-manager errors."""

    retryable = False


class TransientChannelError(ChannelServiceError):
    """Timeouts, 5xx responses and dropped connections."""

    retryable = True


class RateLimitError(TransientChannelError):
    """Rate limiting errors (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class ChannelTimeoutError(TransientChannelError):
    """The request timed out; the channel may still have applied it."""


class UncertainWriteError(ChannelServiceError):
    """A create may have been applied remotely. Not retried; check the channel before replaying."""


class AuthenticationError(ChannelServiceError):
    """Authentication-related errors.

    Retried because credentials are often rotated while events are queued.
    """

    retryable = True


class ChannelValidationError(ChannelServiceError):
    """The channel or the PMS rejected the data. Not retried."""


class MappingNotFoundError(ChannelValidationError):
    """A room, room type or reservation has no active mapping. Not retried."""


class BookingNotFoundError(ChannelServiceError):
    """Booking not found in the channel manager."""


class SyncDisabledError(ChannelServiceError):
    """The integration is configured but syncing is switched off."""


def is_retryable(error: BaseException) -> bool:
    """Whether an error should consume another ledger attempt."""
    if isinstance(error, ChannelServiceError):
        return error.retryable
    # Unknown failures (driver errors, bugs in a handler) are retried within the budget
    return not isinstance(error, (ValueError, KeyError, TypeError))


class BaseChannelClient(ABC):
    """Abstract base class for channel-manager clients."""

    def __init__(self, context: ChannelContext, settings: Settings):
        """Initialize channel client.

        Args:
            context: Resolved per-property channel configuration
            settings: Application settings
        """
        self.context = context
        self.settings = settings
        self.logger = logger.getChild(context.integration)
        self._rate_limiter = asyncio.Semaphore(
            max(1, settings.rate_limit_requests_per_minute // 60)
        )

    @abstractmethod
    async def get_bookings(
        self,
        modified_since: Optional[datetime] = None,
        arrival_from: Optional[date] = None,
        arrival_to: Optional[date] = None,
    ) -> List[ChannelBooking]:
        """Get bookings from the channel.

        Args:
            modified_since: Only bookings modified after this time
            arrival_from: Minimum arrival date
            arrival_to: Maximum arrival date

        Returns:
            List of bookings

        Raises:
            ChannelServiceError: If bookings cannot be retrieved
        """
        pass

    @abstractmethod
    async def get_booking(self, booking_id: str) -> ChannelBooking:
        """Get a single booking.

        Raises:
            BookingNotFoundError: If booking not found
        """
        pass

    @abstractmethod
    async def create_booking(self, booking: ChannelBooking) -> str:
        """Create a booking in the channel.

        Args:
            booking: Booking to create; its id is ignored

        Returns:
            Channel booking ID
        """
        pass

    @abstractmethod
    async def update_booking(self, booking_id: str, booking: ChannelBooking) -> None:
        """Update an existing booking.

        Raises:
            BookingNotFoundError: If booking not found
        """
        pass

    @abstractmethod
    async def cancel_booking(self, booking_id: str) -> None:
        """Cancel a booking.

        Raises:
            BookingNotFoundError: If booking not found
        """
        pass

    @abstractmethod
    async def update_availability(self, room_type_id: str, days: List[AvailabilityDay]) -> None:
        """Push nightly availability for one channel room type."""
        pass

    @abstractmethod
    async def update_rates(self, room_type_id: str, days: List[RateDay]) -> None:
        """Push nightly rates for one channel room type."""
        pass

    @abstractmethod
    async def ping(self) -> Dict[str, Any]:
        """Lightweight authenticated call used by test_connection."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None

    async def test_connection(self) -> Dict[str, Any]:
        """Test connection to the channel manager.

        Returns:
            Dictionary with connection test results
        """
        started = asyncio.get_event_loop().time()
        try:
            info = await self.ping()
            return {
                'success': True,
                'latency_ms': int((asyncio.get_event_loop().time() - started) * 1000),
                'info': info,
            }
        except Exception as e:
            return {
                'success': False,
                'error': str(e),
                'error_type': type(e).__name__
            }

    async def _rate_limited_request(self, coro):
        """Execute a coroutine with rate limiting.

        Args:
            coro: Coroutine to execute

        Returns:
            Coroutine result
        """
        async with self._rate_limiter:
            return await coro

    async def health_check(self) -> bool:
        """Perform a health check on the channel.

        Returns:
            True if healthy, False otherwise
        """
        result = await self.test_connection()
        return result['success']
