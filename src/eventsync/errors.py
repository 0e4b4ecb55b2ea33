"""Error taxonomy for event synchronization."""

from typing import Optional


class EventSyncError(Exception):
    """Base exception for event synchronization errors."""
    pass


class ValidationError(EventSyncError):
    """Malformed input rejected before any write."""
    pass


class ConflictError(EventSyncError):
    """Remote event-type is already actively owned by another project."""

    def __init__(self, message: str, owner_project_id: Optional[str] = None):
        super().__init__(message)
        self.owner_project_id = owner_project_id


class InvalidTransitionError(EventSyncError):
    """Illegal connection state change."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move connection from '{current}' to '{target}'")
        self.current = current
        self.target = target


class NotConnectedError(EventSyncError):
    """Project has no usable provider connection."""
    pass


class WebhookSignatureError(EventSyncError):
    """Webhook delivery failed signature verification."""
    pass
