"""Remote scheduling-provider interfaces and implementations."""

from .base import (
    BaseProviderClient, ProviderError, AuthExpiredError, ProviderUnavailableError,
    RateLimitError, ProviderRequestError, WebhookCapabilityError
)
from .calendly import CalendlyClient

__all__ = [
    'BaseProviderClient',
    'ProviderError',
    'AuthExpiredError',
    'ProviderUnavailableError',
    'RateLimitError',
    'ProviderRequestError',
    'WebhookCapabilityError',
    'CalendlyClient',
]
