"""Notification dispatch with per-key deduplication.

Architecture:
  Table `notification_deliveries` (one row per dedupe key):
    dedupe_key, owner_id, channel, status, attempts, last_error, delivered_at

  dedupe keys:
    insight:<insight_id>    : a newly generated insight
    reminder:<reminder_id>  : a reminder whose time has come

A key already delivered is never sent again. Channel failures are mapped for
the job queue: TransientDeliveryError becomes TransientUpstreamError (retry),
PermanentDeliveryError is recorded as failed and becomes PermanentInputError
(dead-letter).

Channels:
  - InAppChannel  : writes a row to the `notifications` table
  - WebhookChannel: POSTs JSON to a configured URL with httpx
"""

from abc import ABC, abstractmethod
from uuid import NAMESPACE_URL, uuid5

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import get_settings
from models.errors import (
    PermanentDeliveryError,
    PermanentInputError,
    TransientDeliveryError,
    TransientUpstreamError,
)
from models.postgres import DeliveryStatus, Notification, NotificationDelivery, Reminder
from models.schemas import DeliveryResult, NotificationPayload
from utils.logging import get_logger
from utils.metrics import NOTIFICATIONS_DELIVERED
from utils.time import Clock, utcnow

logger = get_logger(__name__)


class DeliveryChannel(ABC):
    name: str

    @abstractmethod
    async def send(self, user_id: str, payload: NotificationPayload) -> None:
        """Deliver one notification.

        Raises:
            TransientDeliveryError: worth retrying later
            PermanentDeliveryError: will never succeed (e.g. invalid destination)
        """


class InAppChannel(DeliveryChannel):
    """Stores the notification for the in-app inbox.

    The row id is derived from the dedupe key, so a redelivery after a crash
    finds the existing row instead of creating a second one.
    """

    name = "in_app"

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Clock = utcnow):
        self._session_maker = session_maker
        self._clock = clock

    @staticmethod
    def notification_id(dedupe_key: str) -> str:
        return str(uuid5(NAMESPACE_URL, f"notification:{dedupe_key}"))

    async def send(self, user_id: str, payload: NotificationPayload) -> None:
        notif_id = self.notification_id(payload.dedupe_key)
        async with self._session_maker() as session:
            if await session.get(Notification, notif_id) is not None:
                return
            session.add(
                Notification(
                    id=notif_id,
                    user_id=user_id,
                    type=payload.type,
                    title=payload.title,
                    body=payload.body,
                    payload={"dedupe_key": payload.dedupe_key, **payload.data},
                    read=False,
                    created_at=self._clock(),
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                # Written concurrently by another attempt
                await session.rollback()
            except Exception as e:
                raise TransientDeliveryError(f"Could not store in-app notification: {e}") from e


class WebhookChannel(DeliveryChannel):
    """POSTs notifications to an HTTP endpoint.

    2xx is success; 408/429/5xx, timeouts and connection errors are
    transient; any other 4xx is permanent.
    """

    name = "webhook"

    def __init__(self, url: str, timeout: float | None = None, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout if timeout is not None else get_settings().notification_webhook_timeout
        self._client = client

    async def send(self, user_id: str, payload: NotificationPayload) -> None:
        body = {
            "user_id": user_id,
            "type": payload.type,
            "title": payload.title,
            "body": payload.body,
            "data": payload.data,
            "dedupe_key": payload.dedupe_key,
        }
        headers = {"Idempotency-Key": payload.dedupe_key}
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Webhook timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Webhook transport error: {type(e).__name__}: {e}") from e

        status = response.status_code
        if 200 <= status < 300:
            return
        if status in (408, 429) or status >= 500:
            raise TransientDeliveryError(f"Webhook returned {status}")
        raise PermanentDeliveryError(f"Webhook rejected notification with {status}")


class NotificationDispatcher:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        channel: DeliveryChannel,
        clock: Clock = utcnow,
    ):
        self._session_maker = session_maker
        self.channel = channel
        self._clock = clock

    async def dispatch(self, payload: NotificationPayload) -> DeliveryResult:
        """Deliver a notification unless its dedupe key was already handled.

        Raises:
            TransientUpstreamError: channel temporarily failing
            PermanentInputError: channel permanently rejected the notification
        """
        key = payload.dedupe_key
        channel = self.channel.name

        async with self._session_maker() as session:
            record = await session.get(NotificationDelivery, key)
            if record is not None and record.status == DeliveryStatus.DELIVERED.value:
                NOTIFICATIONS_DELIVERED.labels(channel=channel, status="duplicate").inc()
                logger.debug(f"Notification {key} already delivered; skipping")
                return DeliveryResult(dedupe_key=key, status="duplicate", channel=record.channel)
            if record is not None and record.status == DeliveryStatus.FAILED.value:
                return DeliveryResult(
                    dedupe_key=key, status="failed", channel=record.channel, detail=record.last_error
                )

        try:
            await self.channel.send(payload.owner_id, payload)
        except TransientDeliveryError as e:
            await self._record(payload, DeliveryStatus.RETRYING, error=str(e))
            NOTIFICATIONS_DELIVERED.labels(channel=channel, status="transient_error").inc()
            raise TransientUpstreamError(f"{channel} delivery of {key} failed: {e}") from e
        except PermanentDeliveryError as e:
            await self._record(payload, DeliveryStatus.FAILED, error=str(e))
            NOTIFICATIONS_DELIVERED.labels(channel=channel, status="failed").inc()
            logger.error(f"{channel} permanently rejected notification {key}: {e}")
            raise PermanentInputError(f"{channel} delivery of {key} rejected: {e}") from e

        await self._record(payload, DeliveryStatus.DELIVERED)
        NOTIFICATIONS_DELIVERED.labels(channel=channel, status="delivered").inc()
        logger.info(f"Delivered {payload.type} notification {key} to {payload.owner_id} via {channel}")
        return DeliveryResult(dedupe_key=key, status="delivered", channel=channel)

    async def _record(
        self, payload: NotificationPayload, status: DeliveryStatus, error: str | None = None
    ) -> None:
        now = self._clock()
        async with self._session_maker() as session:
            record = await session.get(NotificationDelivery, payload.dedupe_key)
            if record is None:
                record = NotificationDelivery(
                    dedupe_key=payload.dedupe_key,
                    owner_id=payload.owner_id,
                    channel=self.channel.name,
                    attempts=0,
                )
                session.add(record)
            record.status = status.value
            record.attempts = (record.attempts or 0) + 1
            record.last_error = error
            record.updated_at = now
            if status == DeliveryStatus.DELIVERED:
                record.delivered_at = now
                if payload.type == "reminder":
                    reminder_id = payload.dedupe_key.split(":", 1)[1]
                    reminder = await session.get(Reminder, reminder_id)
                    if reminder is not None and reminder.delivered_at is None:
                        reminder.delivered_at = now
            await session.commit()


def build_channel(session_maker: async_sessionmaker[AsyncSession]) -> DeliveryChannel:
    """Webhook channel when a URL is configured, in-app otherwise."""
    settings = get_settings()
    if settings.notification_webhook_url:
        return WebhookChannel(settings.notification_webhook_url)
    return InAppChannel(session_maker)
