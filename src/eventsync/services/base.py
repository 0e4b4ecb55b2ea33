"""Base remote-provider client interface with async support."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional
import logging

from ..models import EventBatch, RemoteEvent, RemoteEventType, RemoteInvitee, RemoteWebhook, TokenGrant
from ..config import Settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Base exception for remote provider errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthExpiredError(ProviderError):
    """Token revoked or expired; the connection must be re-authorized."""
    pass


class ProviderUnavailableError(ProviderError):
    """Transient provider failure (5xx, network, timeout); safe to retry."""
    pass


class RateLimitError(ProviderUnavailableError):
    """Provider rate limit hit."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ProviderRequestError(ProviderError):
    """Non-retryable request rejection (4xx other than 401/429)."""
    pass


class WebhookCapabilityError(ProviderRequestError):
    """Provider account cannot host webhook subscriptions."""
    pass


class BaseProviderClient(ABC):
    """Abstract base class for scheduling-provider clients."""

    name = "provider"

    def __init__(self, settings: Settings):
        """Initialize provider client.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.logger = logger.getChild(self.name)
        self._rate_limiter = asyncio.Semaphore(
            max(1, settings.rate_limit_requests_per_minute // 60)
        )

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """Build the OAuth authorization URL.

        Args:
            state: Opaque value echoed back on the redirect (the project id)
        """
        pass

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for tokens.

        Raises:
            AuthExpiredError: If the code is rejected
        """
        pass

    @abstractmethod
    async def list_event_types(self, project_id: str) -> List[RemoteEventType]:
        """List bookable event-types for the connected account."""
        pass

    @abstractmethod
    async def list_events(
        self,
        project_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> EventBatch[RemoteEvent]:
        """List scheduled events starting inside the window.

        Returns:
            Batch of events; ``complete`` is False when pagination was cut off

        Raises:
            ProviderUnavailableError: If nothing could be fetched
        """
        pass

    @abstractmethod
    async def get_event(self, project_id: str, event_id: str) -> Optional[RemoteEvent]:
        """Get one scheduled event, or None if the provider no longer has it."""
        pass

    @abstractmethod
    async def list_invitees(self, project_id: str, event_id: str) -> List[RemoteInvitee]:
        """List invitees for a scheduled event."""
        pass

    @abstractmethod
    async def register_webhook(self, project_id: str, callback_url: str) -> RemoteWebhook:
        """Register a webhook subscription.

        Raises:
            WebhookCapabilityError: If the account cannot use webhooks
        """
        pass

    @abstractmethod
    async def list_webhooks(self, project_id: str) -> List[RemoteWebhook]:
        """List webhook subscriptions visible to the connected account."""
        pass

    @abstractmethod
    async def delete_webhook(self, project_id: str, webhook_id: str) -> None:
        """Delete a webhook subscription (missing subscriptions are ignored)."""
        pass

    @abstractmethod
    async def disconnect(self, project_id: str) -> None:
        """Revoke stored credentials at the provider."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None

    async def test_connection(self, project_id: str) -> Dict[str, Any]:
        """Test the connection for a project.

        Returns:
            Dictionary with connection test results
        """
        try:
            event_types = await self.list_event_types(project_id)
            return {
                'success': True,
                'event_type_count': len(event_types),
            }
        except ProviderError as e:
            return {
                'success': False,
                'error': str(e),
                'error_type': type(e).__name__
            }

    async def _bounded(self, coro: Awaitable, timeout: Optional[float] = None):
        """Run a provider call under the rate limiter and an overall timeout.

        Raises:
            ProviderUnavailableError: If the call does not finish in time
        """
        timeout = timeout or self.settings.provider_call_timeout_seconds
        async with self._rate_limiter:
            try:
                return await asyncio.wait_for(coro, timeout=timeout)
            except asyncio.TimeoutError:
                raise ProviderUnavailableError(f"{self.name} call timed out after {timeout}s")
