"""Webhook delivery verification and parsing."""

import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional, Tuple

from dateutil.parser import isoparse
from pydantic import BaseModel

from .errors import ValidationError, WebhookSignatureError
from .models import EventStatus, RemoteEvent

SIGNATURE_HEADER = "Calendly-Webhook-Signature"

INVITEE_CREATED = "invitee.created"
INVITEE_CANCELED = "invitee.canceled"
HANDLED_EVENTS = (INVITEE_CREATED, INVITEE_CANCELED)


def parse_signature_header(header: str) -> Tuple[int, List[str]]:
    """Split ``t=<ts>,v1=<hex>[,v1=<hex>]`` into timestamp and signatures."""
    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in (header or "").split(','):
        key, _, value = part.strip().partition('=')
        if key == 't':
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Signature timestamp is not an integer")
        elif key == 'v1' and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")
    return timestamp, signatures


def compute_signature(signing_key: str, timestamp: int, body: bytes) -> str:
    message = f"{timestamp}.".encode() + body
    return hmac.new(signing_key.encode(), message, hashlib.sha256).hexdigest()


def sign_header(signing_key: str, body: bytes, timestamp: Optional[int] = None) -> str:
    """Build a signature header for ``body`` (used by tooling and tests)."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(signing_key, timestamp, body)}"


def verify_signature(
    body: bytes,
    header: Optional[str],
    signing_key: str,
    tolerance_seconds: int = 300,
    now: Optional[float] = None
) -> None:
    """Verify a delivery signature.

    Raises:
        WebhookSignatureError: If the header is missing, malformed, too old
            or does not match the body
    """
    if not header:
        raise WebhookSignatureError(f"Missing {SIGNATURE_HEADER} header")
    timestamp, signatures = parse_signature_header(header)

    now = time.time() if now is None else now
    if tolerance_seconds and abs(now - timestamp) > tolerance_seconds:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(signing_key, timestamp, body)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Signature mismatch")


class WebhookDelivery(BaseModel):
    """Parsed webhook delivery."""

    event: str
    event_uri: Optional[str] = None
    event_type_id: Optional[str] = None
    owner_uri: Optional[str] = None
    remote_event: Optional[RemoteEvent] = None

    @property
    def handled(self) -> bool:
        return self.event in HANDLED_EVENTS

    @property
    def complete(self) -> bool:
        return self.remote_event is not None


def _time(value: Optional[str]):
    return isoparse(value) if value else None


def parse_delivery(body: bytes) -> WebhookDelivery:
    """Parse an invitee webhook body.

    A payload missing the fields needed to build a full event still yields
    the event URI so it can be fetched from the provider.

    Raises:
        ValidationError: If the body is not JSON or lacks the event name
    """
    try:
        data: Dict[str, Any] = json.loads(body)
    except ValueError as e:
        raise ValidationError(f"Webhook body is not valid JSON: {e}")
    if not isinstance(data, dict) or not data.get('event'):
        raise ValidationError("Webhook body has no event name")

    payload = data.get('payload') or {}
    scheduled = payload.get('scheduled_event') or {}
    invitee = payload.get('invitee') or payload
    memberships = scheduled.get('event_memberships') or []

    delivery = WebhookDelivery(
        event=data['event'],
        event_uri=scheduled.get('uri'),
        event_type_id=scheduled.get('event_type'),
        owner_uri=memberships[0].get('user') if memberships else None,
    )
    if not delivery.handled or not delivery.event_uri:
        return delivery

    status = scheduled.get('status')
    cancelled_at = None
    if delivery.event == INVITEE_CANCELED:
        status = EventStatus.CANCELLED.value
        cancelled_at = _time((payload.get('cancellation') or {}).get('created_at'))

    if not (scheduled.get('start_time') and scheduled.get('event_type')):
        return delivery

    try:
        delivery.remote_event = RemoteEvent(
            id=scheduled['uri'],
            event_type_id=scheduled['event_type'],
            name=scheduled.get('name'),
            status=status,
            scheduled_at=_time(scheduled['start_time']),
            end_at=_time(scheduled.get('end_time')),
            created_at=_time(scheduled.get('created_at') or invitee.get('created_at') or scheduled['start_time']),
            updated_at=_time(scheduled.get('updated_at') or payload.get('updated_at')),
            cancelled_at=cancelled_at,
            invitee_name=invitee.get('name'),
            invitee_email=invitee.get('email'),
        )
    except ValueError as e:
        raise ValidationError(f"Webhook scheduled event is malformed: {e}")
    return delivery
