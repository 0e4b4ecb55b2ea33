"""Calendly v2 REST client with OAuth token management."""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import pytz
from dateutil.parser import isoparse
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from ..config import Settings
from ..database import DatabaseManager
from ..models import EventBatch, RemoteEvent, RemoteEventType, RemoteInvitee, RemoteWebhook, TokenGrant
from .base import (
    BaseProviderClient, AuthExpiredError, ProviderRequestError,
    ProviderUnavailableError, RateLimitError, WebhookCapabilityError
)

WEBHOOK_EVENTS = ["invitee.created", "invitee.canceled"]

# Refresh a little before the provider considers the token expired
TOKEN_REFRESH_MARGIN = timedelta(seconds=60)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = isoparse(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=pytz.UTC)
    return parsed.astimezone(pytz.UTC)


class CalendlyClient(BaseProviderClient):
    """Calendly implementation of the provider client."""

    name = "calendly"

    def __init__(
        self,
        settings: Settings,
        db_manager: DatabaseManager,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """Initialize the Calendly client.

        Args:
            settings: Application settings
            db_manager: Store holding per-project tokens
            http_client: Optional preconfigured client (used by tests)
        """
        super().__init__(settings)
        self.db_manager = db_manager
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def api_base(self) -> str:
        return self.settings.calendly_api_base_url

    @property
    def auth_base(self) -> str:
        return self.settings.calendly_auth_base_url

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.settings.request_timeout_seconds,
                limits=httpx.Limits(
                    max_connections=self.settings.max_concurrent_requests
                )
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    # OAuth

    def get_auth_url(self, state: str) -> str:
        params = {
            'client_id': self.settings.calendly_client_id,
            'response_type': 'code',
            'redirect_uri': self.settings.calendly_redirect_uri,
            'scope': 'default',
            'state': state,
        }
        return f"{self.auth_base}/oauth/authorize?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        data = await self._bounded(self._token_request({
            'grant_type': 'authorization_code',
            'code': code,
            'redirect_uri': self.settings.calendly_redirect_uri,
        }))
        return self._parse_grant(data)

    async def _token_request(self, form: Dict[str, str]) -> Dict[str, Any]:
        form = dict(form)
        form['client_id'] = self.settings.calendly_client_id
        form['client_secret'] = self.settings.calendly_client_secret
        try:
            response = await self._client().post(f"{self.auth_base}/oauth/token", data=form)
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"Calendly token endpoint unreachable: {e}")

        if response.status_code in (400, 401):
            raise AuthExpiredError(
                f"Calendly rejected the grant: {self._error_detail(response)}",
                status_code=response.status_code,
            )
        self._raise_for_status(response, "token request")
        return response.json()

    def _parse_grant(self, data: Dict[str, Any]) -> TokenGrant:
        expires_at = None
        if data.get('expires_in'):
            expires_at = datetime.now(pytz.UTC) + timedelta(seconds=int(data['expires_in']))
        return TokenGrant(
            access_token=data['access_token'],
            refresh_token=data.get('refresh_token'),
            expires_at=expires_at,
            owner_uri=data.get('owner'),
            organization_uri=data.get('organization'),
        )

    async def _access_token(self, project_id: str) -> str:
        with self.db_manager.get_session() as session:
            connection = self.db_manager.get_connection(session, project_id)

        if connection is None or not connection.access_token:
            raise AuthExpiredError(f"No Calendly credentials stored for project {project_id}")

        expires_at = connection.token_expires_at
        if expires_at is not None and expires_at <= datetime.now(pytz.UTC) + TOKEN_REFRESH_MARGIN:
            return await self._refresh(project_id)
        return connection.access_token

    async def _refresh(self, project_id: str) -> str:
        with self.db_manager.get_session() as session:
            connection = self.db_manager.get_connection(session, project_id)
            refresh_token = connection.refresh_token if connection else None

        if not refresh_token:
            raise AuthExpiredError(f"Access token expired and no refresh token for project {project_id}")

        self.logger.info(f"Refreshing Calendly access token for project {project_id}")
        grant = self._parse_grant(await self._token_request({
            'grant_type': 'refresh_token',
            'refresh_token': refresh_token,
        }))

        with self.db_manager.get_session() as session:
            self.db_manager.save_connection(
                session,
                project_id,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token or refresh_token,
                token_expires_at=grant.expires_at,
            )
        return grant.access_token

    async def disconnect(self, project_id: str) -> None:
        with self.db_manager.get_session() as session:
            connection = self.db_manager.get_connection(session, project_id)
            token = connection.access_token if connection else None
        if not token:
            return

        async def revoke():
            response = await self._client().post(
                f"{self.auth_base}/oauth/revoke",
                data={
                    'client_id': self.settings.calendly_client_id,
                    'client_secret': self.settings.calendly_client_secret,
                    'token': token,
                },
            )
            self._raise_for_status(response, "token revoke")

        await self._bounded(revoke())

    # Requests

    def _error_detail(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(body, dict):
            return body.get('message') or body.get('title') or body.get('error_description') or str(body)
        return str(body)

    def _raise_for_status(self, response: httpx.Response, context: str) -> None:
        status = response.status_code
        if status < 400:
            return

        detail = self._error_detail(response)
        message = f"Calendly {context} failed ({status}): {detail}"
        if status == 401:
            raise AuthExpiredError(message, status_code=status)
        if status == 429:
            retry_after = response.headers.get('Retry-After')
            raise RateLimitError(message, retry_after=float(retry_after) if retry_after else None)
        if status >= 500:
            raise ProviderUnavailableError(message, status_code=status)
        raise ProviderRequestError(message, status_code=status)

    async def _send(
        self,
        method: str,
        url: str,
        project_id: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
        context: str = "request",
    ) -> Optional[Dict[str, Any]]:
        refreshed = False
        while True:
            token = await self._access_token(project_id)
            try:
                response = await self._client().request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers={'Authorization': f"Bearer {token}"},
                )
            except httpx.TransportError as e:
                raise ProviderUnavailableError(f"Calendly {context} failed: {e}")

            if response.status_code == 401 and not refreshed:
                refreshed = True
                await self._refresh(project_id)
                continue
            if response.status_code == 404 and allow_404:
                return None

            self._raise_for_status(response, context)
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

    async def _request(self, method: str, url: str, project_id: str, **kwargs) -> Optional[Dict[str, Any]]:
        """Send a request, retrying transient failures with exponential backoff."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.retry_attempts),
            wait=wait_exponential(multiplier=self.settings.retry_backoff_seconds, max=30),
            retry=retry_if_exception_type(ProviderUnavailableError),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, url, project_id, **kwargs)

    async def _owner(self, project_id: str) -> Dict[str, Optional[str]]:
        with self.db_manager.get_session() as session:
            connection = self.db_manager.get_connection(session, project_id)
        if connection is None or not connection.owner_uri:
            raise AuthExpiredError(f"Project {project_id} has no Calendly owner; reconnect required")
        return {'user': connection.owner_uri, 'organization': connection.organization_uri}

    def _url(self, path_or_uri: str) -> str:
        if path_or_uri.startswith('http'):
            return path_or_uri
        return f"{self.api_base}/{path_or_uri.lstrip('/')}"

    # Event types

    async def list_event_types(self, project_id: str) -> List[RemoteEventType]:
        owner = await self._owner(project_id)

        async def fetch() -> List[RemoteEventType]:
            items: List[RemoteEventType] = []
            url: Optional[str] = self._url('event_types')
            params: Optional[Dict[str, Any]] = {'user': owner['user'], 'count': self.settings.sync_config.page_size}
            while url:
                data = await self._request('GET', url, project_id, params=params, context="event type listing")
                for item in data.get('collection', []):
                    items.append(RemoteEventType(
                        id=item['uri'],
                        name=item.get('name') or '',
                        active=item.get('active', True),
                        slug=item.get('slug'),
                        duration_minutes=item.get('duration'),
                    ))
                url = (data.get('pagination') or {}).get('next_page')
                params = None
            return items

        return await self._bounded(fetch())

    # Events

    def _parse_event(self, item: Dict[str, Any]) -> RemoteEvent:
        cancellation = item.get('cancellation') or {}
        return RemoteEvent(
            id=item['uri'],
            event_type_id=item.get('event_type') or '',
            name=item.get('name'),
            status=item.get('status'),
            scheduled_at=_parse_time(item['start_time']),
            end_at=_parse_time(item.get('end_time')),
            created_at=_parse_time(item.get('created_at') or item['start_time']),
            updated_at=_parse_time(item.get('updated_at')),
            cancelled_at=_parse_time(cancellation.get('created_at')),
        )

    async def list_events(
        self,
        project_id: str,
        window_start: datetime,
        window_end: datetime,
    ) -> EventBatch[RemoteEvent]:
        owner = await self._owner(project_id)
        sync_config = self.settings.sync_config

        async def fetch() -> EventBatch[RemoteEvent]:
            batch: EventBatch[RemoteEvent] = EventBatch()
            url: Optional[str] = self._url('scheduled_events')
            params: Optional[Dict[str, Any]] = {
                'user': owner['user'],
                'min_start_time': window_start.astimezone(pytz.UTC).isoformat(),
                'max_start_time': window_end.astimezone(pytz.UTC).isoformat(),
                'count': sync_config.page_size,
                'sort': 'start_time:asc',
            }
            pages = 0
            while url:
                if pages >= sync_config.max_pages:
                    batch.complete = False
                    batch.error = f"stopped after {pages} pages"
                    break
                try:
                    data = await self._bounded(self._request(
                        'GET', url, project_id, params=params, context="event listing"
                    ))
                except ProviderUnavailableError as e:
                    if pages == 0:
                        raise
                    self.logger.warning(f"Event listing cut off after {pages} pages: {e}")
                    batch.complete = False
                    batch.error = str(e)
                    break
                pages += 1
                for item in data.get('collection', []):
                    try:
                        batch.events.append(self._parse_event(item))
                    except (KeyError, ValueError) as e:
                        self.logger.warning(f"Skipping malformed event {item.get('uri')}: {e}")
                url = (data.get('pagination') or {}).get('next_page')
                params = None
            return batch

        return await fetch()

    async def get_event(self, project_id: str, event_id: str) -> Optional[RemoteEvent]:
        data = await self._bounded(self._request(
            'GET', self._url(event_id if event_id.startswith('http') else f"scheduled_events/{event_id}"),
            project_id, allow_404=True, context="event lookup",
        ))
        if data is None:
            return None
        return self._parse_event(data.get('resource', data))

    async def list_invitees(self, project_id: str, event_id: str) -> List[RemoteInvitee]:
        base = self._url(event_id if event_id.startswith('http') else f"scheduled_events/{event_id}")
        data = await self._bounded(self._request(
            'GET', f"{base.rstrip('/')}/invitees", project_id, allow_404=True, context="invitee listing",
        ))
        if not data:
            return []
        return [
            RemoteInvitee(
                name=item.get('name'),
                email=item.get('email'),
                status=item.get('status'),
                created_at=_parse_time(item.get('created_at')),
            )
            for item in data.get('collection', [])
        ]

    # Webhooks

    def _parse_webhook(self, item: Dict[str, Any]) -> RemoteWebhook:
        return RemoteWebhook(
            id=item['uri'],
            callback_url=item.get('callback_url') or '',
            created_at=_parse_time(item.get('created_at')) or datetime.now(pytz.UTC),
            state=item.get('state'),
            events=item.get('events') or [],
        )

    async def register_webhook(self, project_id: str, callback_url: str) -> RemoteWebhook:
        owner = await self._owner(project_id)
        body: Dict[str, Any] = {
            'url': callback_url,
            'events': WEBHOOK_EVENTS,
            'organization': owner['organization'],
            'user': owner['user'],
            'scope': 'user',
        }
        if self.settings.webhook_signing_key:
            body['signing_key'] = self.settings.webhook_signing_key

        try:
            data = await self._bounded(self._request(
                'POST', self._url('webhook_subscriptions'), project_id, json=body,
                context="webhook registration",
            ))
        except ProviderRequestError as e:
            if e.status_code == 403:
                raise WebhookCapabilityError(
                    "Calendly account plan does not allow webhook subscriptions", status_code=403
                )
            raise
        return self._parse_webhook(data.get('resource', data))

    async def list_webhooks(self, project_id: str) -> List[RemoteWebhook]:
        owner = await self._owner(project_id)

        async def fetch() -> List[RemoteWebhook]:
            hooks: List[RemoteWebhook] = []
            url: Optional[str] = self._url('webhook_subscriptions')
            params: Optional[Dict[str, Any]] = {
                'organization': owner['organization'],
                'user': owner['user'],
                'scope': 'user',
                'count': self.settings.sync_config.page_size,
            }
            while url:
                data = await self._request('GET', url, project_id, params=params, context="webhook listing")
                hooks.extend(self._parse_webhook(item) for item in data.get('collection', []))
                url = (data.get('pagination') or {}).get('next_page')
                params = None
            return hooks

        return await self._bounded(fetch())

    async def delete_webhook(self, project_id: str, webhook_id: str) -> None:
        url = self._url(webhook_id if webhook_id.startswith('http') else f"webhook_subscriptions/{webhook_id}")
        await self._bounded(self._request(
            'DELETE', url, project_id, allow_404=True, context="webhook deletion",
        ))
