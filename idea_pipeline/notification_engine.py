"""
Notification Engine

Best-effort notifications for pipeline events.

1. Pre-defined templates per event
2. Routing to registered channels (Discord webhook)
3. Rate limiting per recipient
4. Daily JSONL delivery log

IMPORTANT:
- Delivery is fire-and-forget: notify() schedules a background task and
  returns immediately, so an unreachable channel can never block or fail a
  transition
- Channel errors are logged, never raised
"""

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Deque, Dict, List, Optional, Any, Callable, Awaitable, Set

import httpx

logger = logging.getLogger("notification_engine")

RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX = 10  # max notifications per window
DELIVERED_HISTORY = 100  # most recent deliveries kept in memory


class NotificationType(str, Enum):
    """Pipeline events that produce a notification."""
    IDEA_REFINED = "idea_refined"
    FEEDBACK_APPLIED = "feedback_applied"
    PROJECT_DESIGNED = "project_designed"
    DEVELOPMENT_STARTED = "development_started"
    PREVIEW_READY = "preview_ready"
    BUILD_FAILED = "build_failed"
    TASK_REJECTED = "task_rejected"
    DAILY_IDEAS = "daily_ideas"
    SYSTEM_ALERT = "system_alert"


# Embed colors
COLOR_INFO = 0x3498DB
COLOR_REVISION = 0x9B59B6
COLOR_SUCCESS = 0x00FF00
COLOR_WARNING = 0xF1C40F
COLOR_FAILURE = 0xE74C3C
COLOR_MUTED = 0x95A5A6


@dataclass
class Notification:
    """A notification to be delivered."""
    notification_type: NotificationType
    title: str
    message: str
    color: int = COLOR_INFO
    fields: List[Dict[str, str]] = field(default_factory=list)
    task_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    delivered_at: Optional[datetime] = None
    delivery_channel: Optional[str] = None
    delivery_error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "type": self.notification_type.value,
            "title": self.title,
            "message": self.message,
            "color": self.color,
            "fields": self.fields,
            "task_id": self.task_id,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "delivery_channel": self.delivery_channel,
            "delivery_error": self.delivery_error,
        }


class NotificationTemplates:
    """Pre-defined notification templates."""

    @staticmethod
    def idea_refined(task_id: str, original_title: str, title: str) -> Notification:
        return Notification(
            notification_type=NotificationType.IDEA_REFINED,
            title="💡 Idea refined",
            message=f"The plan for \"{original_title}\" is ready as \"{title}\".",
            color=COLOR_INFO,
            task_id=task_id,
        )

    @staticmethod
    def feedback_applied(task_id: str, title: str) -> Notification:
        return Notification(
            notification_type=NotificationType.FEEDBACK_APPLIED,
            title="🔄 Feedback applied",
            message=f"\"{title}\" was revised based on your feedback.",
            color=COLOR_REVISION,
            task_id=task_id,
        )

    @staticmethod
    def project_designed(task_id: str, title: str, directory_name: str) -> Notification:
        return Notification(
            notification_type=NotificationType.PROJECT_DESIGNED,
            title="📐 Design ready",
            message=(
                f"\"{title}\" was provisioned as `{directory_name}` and its design "
                f"document is ready. Start development when you are happy with it."
            ),
            color=COLOR_SUCCESS,
            task_id=task_id,
            metadata={"directory_name": directory_name},
        )

    @staticmethod
    def development_started(task_id: str, title: str, directory_name: str) -> Notification:
        return Notification(
            notification_type=NotificationType.DEVELOPMENT_STARTED,
            title="🛠️ Development started",
            message=f"Building \"{title}\" (`{directory_name}`). A preview link follows when it is up.",
            color=COLOR_INFO,
            task_id=task_id,
            metadata={"directory_name": directory_name},
        )

    @staticmethod
    def preview_ready(task_id: str, title: str, review_url: str) -> Notification:
        return Notification(
            notification_type=NotificationType.PREVIEW_READY,
            title="🚀 Preview ready",
            message=f"\"{title}\" is ready for review:\n{review_url}",
            color=COLOR_SUCCESS,
            task_id=task_id,
            metadata={"review_url": review_url},
        )

    @staticmethod
    def build_failed(task_id: str, title: str, error: str) -> Notification:
        return Notification(
            notification_type=NotificationType.BUILD_FAILED,
            title="❌ Build failed",
            message=f"Building \"{title}\" failed and it was moved back to designed.\n```\n{error[:300]}\n```",
            color=COLOR_FAILURE,
            task_id=task_id,
            metadata={"error": error},
        )

    @staticmethod
    def task_rejected(task_id: str, title: str, directory_removed: bool) -> Notification:
        detail = " Its project directory was removed." if directory_removed else ""
        return Notification(
            notification_type=NotificationType.TASK_REJECTED,
            title="🗑️ Idea rejected",
            message=f"\"{title}\" was rejected.{detail}",
            color=COLOR_MUTED,
            task_id=task_id,
        )

    @staticmethod
    def daily_ideas(month: str, ideas: List[Dict[str, Any]]) -> Notification:
        fields = [
            {
                "name": f"💡 {idea.get('title', '')} ({idea.get('difficulty') or '★'})",
                "value": (
                    f"{idea.get('overview', '')}\n"
                    f"**Target:** {idea.get('target', '')}\n"
                    f"**Monetize:** {idea.get('monetization', '')}\n"
                    f"**Type:** {idea.get('type', '')}"
                ),
            }
            for idea in ideas
        ]
        return Notification(
            notification_type=NotificationType.DAILY_IDEAS,
            title="🤖 New ideas have arrived!",
            message=f"Generated {len(ideas)} ideas based on trends for {month}.",
            color=COLOR_SUCCESS,
            fields=fields,
        )


Channel = Callable[[Notification], Awaitable[bool]]


class NotificationEngine:
    """
    Central notification engine.

    Features:
    - Multiple delivery channels
    - Rate limiting per recipient
    - Delivery logging
    - Background (fire-and-forget) delivery
    """

    def __init__(self, log_dir: Optional[Path] = None):
        self._channels: Dict[str, Channel] = {}
        self._rate_limits: Dict[str, List[datetime]] = {}
        self._pending: Set[asyncio.Task] = set()
        self._log_dir = Path(log_dir) if log_dir else None
        self.delivered: Deque[Notification] = deque(maxlen=DELIVERED_HISTORY)

    def register_channel(self, name: str, handler: Channel):
        """Register a notification delivery channel."""
        self._channels[name] = handler
        logger.info(f"Registered notification channel: {name}")

    @property
    def channels(self) -> List[str]:
        return list(self._channels)

    def _check_rate_limit(self, recipient: str) -> bool:
        now = datetime.now(timezone.utc)
        window_start = now - timedelta(seconds=RATE_LIMIT_WINDOW)
        recent = [t for t in self._rate_limits.get(recipient, []) if t > window_start]
        if len(recent) >= RATE_LIMIT_MAX:
            self._rate_limits[recipient] = recent
            return False
        recent.append(now)
        self._rate_limits[recipient] = recent
        return True

    def _log_notification(self, notification: Notification):
        """Append the notification to today's delivery log."""
        if self._log_dir is None:
            return
        log_file = self._log_dir / f"{datetime.now(timezone.utc).strftime('%Y-%m-%d')}.jsonl"
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(notification.to_dict(), ensure_ascii=False) + "\n")
        except OSError as e:
            logger.error(f"Failed to log notification: {e}")

    async def send(
        self,
        notification: Notification,
        channel: Optional[str] = None,
        recipient: str = "default",
    ) -> bool:
        """
        Deliver through the given channel (None = first channel that succeeds).

        Returns True if delivered.
        """
        if not self._check_rate_limit(recipient):
            logger.warning(f"Rate limit exceeded for {recipient}")
            notification.delivery_error = "Rate limit exceeded"
            self._log_notification(notification)
            return False

        channels = [channel] if channel else list(self._channels.keys())
        delivered = False
        for ch_name in channels:
            handler = self._channels.get(ch_name)
            if handler is None:
                continue
            try:
                if await handler(notification):
                    notification.delivered_at = datetime.now(timezone.utc)
                    notification.delivery_channel = ch_name
                    delivered = True
                    break
            except Exception as e:
                logger.error(f"Channel {ch_name} delivery failed: {e}")
                notification.delivery_error = str(e)

        if delivered:
            self.delivered.append(notification)
        self._log_notification(notification)
        return delivered

    def notify(self, notification: Notification) -> None:
        """Schedule delivery in the background and return immediately."""
        if not self._channels:
            logger.debug(f"No notification channels; skipping {notification.notification_type.value}")
            self._log_notification(notification)
            return

        task = asyncio.get_running_loop().create_task(self._send_quietly(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send_quietly(self, notification: Notification) -> None:
        try:
            await self.send(notification)
        except Exception as e:
            logger.error(f"Notification {notification.notification_type.value} failed: {e}")

    async def drain(self, timeout: float = 10.0) -> None:
        """Wait for in-flight background deliveries."""
        if not self._pending:
            return
        done, pending = await asyncio.wait(set(self._pending), timeout=timeout)
        for task in pending:
            task.cancel()


# Discord channel implementation
def discord_channel(
    webhook_url: str,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Channel:
    """Build a channel that posts notifications as Discord webhook embeds."""

    async def send(notification: Notification) -> bool:
        payload = {
            "embeds": [{
                "title": notification.title,
                "description": notification.message,
                "color": notification.color,
                "fields": notification.fields,
                "timestamp": notification.created_at.isoformat(),
            }]
        }
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                response = await client.post(webhook_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Discord send error: {e}")
            return False
        if response.status_code in (200, 204):
            return True
        logger.error(f"Discord webhook returned {response.status_code}")
        return False

    return send


def build_notification_engine(config) -> NotificationEngine:
    """Create the engine and register the channels the config enables."""
    engine = NotificationEngine(log_dir=config.notifications_path)
    if config.discord_webhook_url:
        engine.register_channel("discord", discord_channel(config.discord_webhook_url))
    else:
        logger.info("Discord webhook URL not set; notifications are only logged")
    return engine
