"""Client for the external notification dispatcher.

Delivery itself (email, Slack, webhooks, push, ...) and its retry policy
belong to a separate service. The engine hands each notification over
once per escalation step; transport failures surface as
NotificationDispatchError so the step can be retried on the next tick.
"""

import uuid
from dataclasses import dataclass
from typing import Protocol

import httpx

from pulsar_escalation.config import Settings
from pulsar_escalation.core.errors import NotificationDispatchError
from pulsar_escalation.logging_config import get_logger
from pulsar_escalation.models.notification import ChannelType
from pulsar_escalation.services.alert_notifier import NotificationPayload

logger = get_logger(__name__)

DISPATCH_PATH = "/v1/notifications"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of handing one notification to the dispatcher."""

    delivered: bool
    error: str | None = None
    dispatch_id: str | None = None


class NotificationDispatcher(Protocol):
    """Anything that can hand a notification to a delivery channel."""

    async def send(
        self,
        user_id: uuid.UUID,
        channel: ChannelType,
        payload: NotificationPayload,
    ) -> DeliveryResult:
        """Send one notification.

        Raises:
            NotificationDispatchError: On transient failures worth retrying
        """
        ...


class HttpNotificationDispatcher:
    """Posts notifications to the dispatcher service over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpNotificationDispatcher":
        return cls(
            base_url=settings.notification_dispatch_url,
            api_key=settings.notification_dispatch_api_key,
            timeout=settings.notification_dispatch_timeout_seconds,
        )

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    async def send(
        self,
        user_id: uuid.UUID,
        channel: ChannelType,
        payload: NotificationPayload,
    ) -> DeliveryResult:
        """Post a notification to the dispatcher.

        Returns:
            DeliveryResult; delivered is False when the dispatcher is not
            configured or rejects the request outright (4xx)

        Raises:
            NotificationDispatchError: On network errors, 429 or 5xx
        """
        if not self.base_url:
            logger.warning(
                "Notification dispatcher is not configured",
                alert_id=str(payload.alert_id),
                channel=channel.value,
            )
            return DeliveryResult(
                delivered=False, error="Notification dispatcher is not configured"
            )

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}{DISPATCH_PATH}",
                    json=payload.to_json(user_id, channel),
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise NotificationDispatchError(f"Dispatcher unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NotificationDispatchError(
                f"Dispatcher unavailable: {response.status_code} {response.text}"
            )

        if response.status_code >= 400:
            return DeliveryResult(
                delivered=False,
                error=f"Dispatcher rejected notification: "
                f"{response.status_code} {response.text}",
            )

        return DeliveryResult(delivered=True, dispatch_id=_dispatch_id(response))


def _dispatch_id(response: httpx.Response) -> str | None:
    """The dispatcher's id for an accepted notification, if its reply has one."""
    if not response.content:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict) or body.get("id") is None:
        return None
    return str(body["id"])
