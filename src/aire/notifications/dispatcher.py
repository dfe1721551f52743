"""
Notification dispatcher

Fans alerts out to every accepting channel, applies per-endpoint rate
limits at enqueue time and delivers through a single FIFO drain loop with
bounded retries.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from ..concurrency.rate_limiter import ChannelRateLimiter
from ..config import NotificationSettings
from ..errors import DeliveryError
from ..models import (
    Alert,
    AlertNotification,
    NotificationConfig,
    NotificationKind,
    utcnow,
)
from ..observability.tracer import trace_operation
from ..store.manager import HistoryStore
from .base import NotificationTransport

if TYPE_CHECKING:
    from ..observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

RESOLUTION_SEVERITIES = ("high", "critical")


class NotificationDispatcher:
    """
    Queues and delivers AlertNotifications

    Only one drain task runs at a time; enqueueing while it runs simply
    appends to the queue. Retries re-enter the same queue after their
    backoff and do not count against the rate limit a second time.
    """

    def __init__(
        self,
        channels: list[NotificationConfig],
        transports: dict[str, NotificationTransport],
        settings: Optional[NotificationSettings] = None,
        store: Optional[HistoryStore] = None,
        rate_limiter: Optional[ChannelRateLimiter] = None,
        metrics: Optional["MetricsCollector"] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.channels = list(channels)
        self.transports = transports
        self.settings = settings or NotificationSettings()
        self.store = store
        self.metrics = metrics
        self._clock = clock
        self.rate_limiter = rate_limiter or ChannelRateLimiter(clock)

        self._queue: deque[AlertNotification] = deque()
        self._configs: dict[str, NotificationConfig] = {}
        self._history: dict[str, AlertNotification] = {}
        self._drain_task: Optional[asyncio.Task] = None
        self._retry_tasks: set[asyncio.Task] = set()
        self._accepting = True

    def update_channels(self, channels: list[NotificationConfig]) -> None:
        self.channels = list(channels)

    def _select_configs(
        self,
        alert: Alert,
        kind: NotificationKind,
        extra: Iterable[NotificationConfig],
        channels: Optional[Iterable[str]],
    ) -> list[NotificationConfig]:
        candidates = [*self.channels, *extra]
        if channels is not None:
            wanted = set(channels)
            candidates = [c for c in candidates if c.channel in wanted or c.name in wanted]

        if kind == "resolution":
            if alert.severity not in RESOLUTION_SEVERITIES:
                return []
            return [c for c in candidates if c.enabled and c.send_resolutions]
        return [c for c in candidates if c.accepts(alert.severity)]

    async def enqueue(
        self,
        alert: Alert,
        kind: NotificationKind = "alert",
        extra_configs: Iterable[NotificationConfig] = (),
        channels: Optional[Iterable[str]] = None,
    ) -> list[AlertNotification]:
        """
        Create one notification per accepting channel and start draining

        Args:
            alert: Alert to announce
            kind: alert, resolution or escalation notice
            extra_configs: Ad-hoc targets in addition to the configured channels
            channels: Restrict to these channel kinds or config names

        Returns:
            The created notifications, including rate-limited ones
        """
        if not self._accepting:
            logger.warning(f"Dispatcher stopped, dropping {kind} notice for {alert.id}")
            return []

        payload = alert.to_payload()
        payload["notification_kind"] = kind
        created = []

        for config in self._select_configs(alert, kind, extra_configs, channels):
            notification = AlertNotification(
                alert_id=alert.id,
                channel=config.channel,
                config_name=config.name,
                endpoint=config.endpoint,
                kind=kind,
                payload=payload,
                created_at=self._clock(),
            )

            exhausted = self.rate_limiter.try_acquire(config.rate_key, config.rate_limit)
            if exhausted:
                notification.status = "rate_limited"
                notification.error_message = f"{exhausted} rate limit exceeded"
                logger.warning(
                    f"Notification rate limited ({exhausted}) for "
                    f"{config.name} alert={alert.id}"
                )
                if self.metrics:
                    self.metrics.record_notification_rate_limited(config.channel)
            else:
                self._configs[notification.id] = config
                self._queue.append(notification)

            self._history[notification.id] = notification
            created.append(notification)
            if self.store:
                await self.store.save_notification(notification)

        self._ensure_draining()
        return created

    def _ensure_draining(self) -> None:
        if self._queue and (self._drain_task is None or self._drain_task.done()):
            self._drain_task = asyncio.create_task(self._drain(), name="notification-drain")

    async def drain_pending(self) -> None:
        """Periodic safety net: restart the drain loop if work is waiting"""
        self._ensure_draining()

    async def _drain(self) -> None:
        while self._queue:
            notification = self._queue.popleft()
            try:
                await self._send(notification)
            except Exception:
                logger.exception(f"Unexpected error sending notification {notification.id}")
            if self._queue and self.settings.inter_delivery_delay:
                await asyncio.sleep(self.settings.inter_delivery_delay)

    async def _send(self, notification: AlertNotification) -> None:
        config = self._configs.get(notification.id)
        transport = self.transports.get(notification.channel)

        if config is None or transport is None:
            notification.status = "failed"
            notification.error_message = (
                f"No transport for channel {notification.channel}"
                if config is not None
                else "Channel configuration not found"
            )
            self._configs.pop(notification.id, None)
            await self._persist(notification)
            return

        notification.attempts += 1
        notification.last_attempt = self._clock()

        success = False
        error: Optional[str] = None
        with trace_operation(
            "notification.deliver",
            {
                "notification.id": notification.id,
                "notification.channel": notification.channel,
                "notification.attempt": notification.attempts,
            },
        ):
            try:
                if self.metrics:
                    with self.metrics.time_delivery(notification.channel):
                        success = await self._deliver(transport, config, notification)
                else:
                    success = await self._deliver(transport, config, notification)
                if not success:
                    error = "Transport reported failure"
            except DeliveryError as e:
                error = str(e)
            except asyncio.TimeoutError:
                error = f"Delivery timed out after {self.settings.delivery_timeout}s"
            except Exception as e:
                logger.exception(f"Transport {notification.channel} raised unexpectedly")
                error = f"Unexpected transport error: {e}"

        if self.metrics:
            self.metrics.record_notification(notification.channel, success)

        if success:
            notification.status = "sent"
            notification.sent_at = self._clock()
            notification.next_retry = None
            notification.error_message = None
            self._configs.pop(notification.id, None)
            logger.info(
                f"Notification {notification.id} sent via {config.name} "
                f"(alert={notification.alert_id}, attempts={notification.attempts})"
            )
        else:
            notification.error_message = error
            will_retry = notification.attempts < config.retry.max_attempts
            if will_retry:
                backoff = config.retry.backoff_for(notification.attempts)
                notification.status = "pending"
                notification.next_retry = self._clock() + timedelta(seconds=backoff)
                self._schedule_retry(notification, backoff)
            else:
                notification.status = "failed"
                notification.next_retry = None
                self._configs.pop(notification.id, None)
            logger.error(
                f"Notification {notification.id} via {config.name} failed "
                f"(attempt {notification.attempts}/{config.retry.max_attempts}, "
                f"will_retry={will_retry}): {error}"
            )

        await self._persist(notification)

    async def _deliver(
        self,
        transport: NotificationTransport,
        config: NotificationConfig,
        notification: AlertNotification,
    ) -> bool:
        return await asyncio.wait_for(
            transport.deliver(config, notification.payload),
            timeout=self.settings.delivery_timeout,
        )

    def _schedule_retry(self, notification: AlertNotification, delay: float) -> None:
        task = asyncio.create_task(self._requeue_later(notification, delay))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _requeue_later(self, notification: AlertNotification, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.append(notification)
        self._ensure_draining()

    async def _persist(self, notification: AlertNotification) -> None:
        if self.store:
            await self.store.save_notification(notification)

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and no retries are outstanding"""
        while True:
            pending = [
                t
                for t in (self._drain_task, *self._retry_tasks)
                if t is not None and not t.done()
            ]
            if not pending and not self._queue:
                return
            if not pending:
                self._ensure_draining()
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    async def stop(self) -> None:
        """Stop accepting work, drop scheduled retries and finish in-flight deliveries"""
        self._accepting = False
        for task in list(self._retry_tasks):
            task.cancel()
        if self._retry_tasks:
            await asyncio.gather(*self._retry_tasks, return_exceptions=True)
        if self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    def queue_size(self) -> int:
        return len(self._queue)

    def get_notifications(self, alert_id: Optional[str] = None) -> list[AlertNotification]:
        notifications = list(self._history.values())
        if alert_id is not None:
            notifications = [n for n in notifications if n.alert_id == alert_id]
        return notifications

    def get_stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for notification in self._history.values():
            by_status[notification.status] = by_status.get(notification.status, 0) + 1
        return {
            "queued": len(self._queue),
            "retries_scheduled": len(self._retry_tasks),
            "by_status": by_status,
        }

    def cleanup(self, retention: timedelta) -> int:
        """Forget finished notifications older than the retention window"""
        cutoff = self._clock() - retention
        stale = [
            nid
            for nid, n in self._history.items()
            if n.status in ("sent", "failed", "rate_limited") and n.created_at < cutoff
        ]
        for nid in stale:
            del self._history[nid]
        return len(stale)
