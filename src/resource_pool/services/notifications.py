"""Notification service with simulated email, SMS and push transports."""

import asyncio
import random
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from ..config import NotificationConfig
from ..core.constants import (
    EMAIL_FAILURE_RATE,
    EMAIL_LATENCY_MS,
    MAX_SMS_LENGTH,
    MIN_PHONE_DIGITS,
    PUSH_FAILURE_RATE,
    PUSH_LATENCY_MS,
    SMS_FAILURE_RATE,
    SMS_LATENCY_MS,
)
from ..database.manager import DatabaseManager
from ..exceptions import NotificationError, ValidationError
from ..logging import get_logger
from .rate_limiter import FixedWindowRateLimiter
from .users import is_valid_email

CHANNELS = ("email", "sms", "push")

PHONE_PATTERN = re.compile(r"^\+?[\d\s\-()]+$")

_CHANNEL_PROFILES = {
    "email": (EMAIL_FAILURE_RATE, EMAIL_LATENCY_MS, "Email service temporarily unavailable"),
    "sms": (SMS_FAILURE_RATE, SMS_LATENCY_MS, "SMS service temporarily unavailable"),
    "push": (PUSH_FAILURE_RATE, PUSH_LATENCY_MS, "Push notification service temporarily unavailable"),
}


def is_valid_phone_number(phone: Any) -> bool:
    if not isinstance(phone, str) or not PHONE_PATTERN.match(phone):
        return False
    return len(re.sub(r"\D", "", phone)) >= MIN_PHONE_DIGITS


class NotificationTransport(Protocol):
    """Delivers a payload on a channel and returns the provider receipt."""

    async def send(self, channel: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...


class SimulatedTransport:
    """Random-latency, random-failure delivery for every channel."""

    def __init__(self, rng: Optional[random.Random] = None, latency_scale: float = 1.0):
        self._rng = rng or random.Random()
        self.latency_scale = latency_scale

    async def send(self, channel: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        failure_rate, latency_ms, failure_message = _CHANNEL_PROFILES[channel]
        await asyncio.sleep(latency_ms * self.latency_scale / 1000)
        if self._rng.random() < failure_rate:
            raise NotificationError(failure_message, {"channel": channel})
        return {
            "message_id": f"{channel}_{uuid.uuid4().hex[:12]}",
            "status": "sent",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


def _empty_stats() -> Dict[str, Any]:
    return {
        "total_sent": 0,
        "successful": 0,
        "failed": 0,
        "by_type": {channel: {"sent": 0, "successful": 0, "failed": 0} for channel in CHANNELS},
        "last_sent": None,
    }


class NotificationService:
    """Sends notifications under a shared rate limit and keeps delivery statistics."""

    def __init__(
        self,
        transport: NotificationTransport,
        settings: Optional[NotificationConfig] = None,
        database: Optional[DatabaseManager] = None,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
    ):
        self.transport = transport
        self.settings = settings or NotificationConfig()
        self.database = database
        self.rate_limiter = rate_limiter or FixedWindowRateLimiter(self.settings.rate_limit_per_minute)
        self._stats = _empty_stats()
        self.logger = get_logger(__name__).bind(service="NotificationService")
        self.logger.info(
            "NotificationService initialized",
            email_provider=self.settings.email_provider,
            sms_provider=self.settings.sms_provider,
            push_provider=self.settings.push_provider,
            rate_limit=self.settings.rate_limit_per_minute,
        )

    async def send_email(self, to: str, subject: str, body: str, **options: Any) -> Dict[str, Any]:
        """Send an email notification."""
        def build() -> Dict[str, Any]:
            if not is_valid_email(to):
                raise ValidationError("Valid recipient email is required")
            if not isinstance(subject, str) or not subject.strip():
                raise ValidationError("Email subject is required")
            if not isinstance(body, str) or not body.strip():
                raise ValidationError("Email body is required")
            return {
                "to": to,
                "subject": subject,
                "body": body,
                "from": options.get("sender") or self.settings.email_from,
                "reply_to": options.get("reply_to"),
                "attachments": options.get("attachments") or [],
            }

        return await self._deliver("email", to, subject, build)

    async def send_sms(self, to: str, message: str, **options: Any) -> Dict[str, Any]:
        """Send an SMS notification."""
        def build() -> Dict[str, Any]:
            if not is_valid_phone_number(to):
                raise ValidationError("Valid recipient phone number is required")
            if not isinstance(message, str) or not message.strip():
                raise ValidationError("SMS message is required")
            if len(message) > MAX_SMS_LENGTH:
                raise ValidationError(f"SMS message cannot exceed {MAX_SMS_LENGTH} characters")
            return {
                "to": to,
                "message": message,
                "from": options.get("sender") or self.settings.sms_from,
                "priority": options.get("priority", "normal"),
            }

        return await self._deliver("sms", to, message, build)

    async def send_push(self, user_id: str, title: str, body: str, **options: Any) -> Dict[str, Any]:
        """Send a push notification to a user or device token."""
        def build() -> Dict[str, Any]:
            if not isinstance(user_id, str) or not user_id.strip():
                raise ValidationError("Valid user ID is required")
            if not isinstance(title, str) or not title.strip():
                raise ValidationError("Notification title is required")
            if not isinstance(body, str) or not body.strip():
                raise ValidationError("Notification body is required")
            return {
                "user_id": user_id,
                "title": title,
                "body": body,
                "data": options.get("data") or {},
                "sound": options.get("sound", "default"),
                "priority": options.get("priority", "normal"),
            }

        return await self._deliver("push", user_id, title, build)

    async def send_bulk(self, notifications: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Send notifications in concurrent batches, collecting per-item failures."""
        self.logger.info(
            "Sending bulk notifications",
            count=len(notifications),
            types=sorted({n.get("type") for n in notifications if n.get("type")}),
        )
        results: Dict[str, Any] = {"total": len(notifications), "successful": 0, "failed": 0, "errors": []}
        batch_size = self.settings.batch_size

        async def send_one(notification: Dict[str, Any]) -> None:
            try:
                kind = notification.get("type")
                options = notification.get("options") or {}
                if kind == "email":
                    await self.send_email(notification.get("to"), notification.get("subject"), notification.get("body"), **options)
                elif kind == "sms":
                    await self.send_sms(notification.get("to"), notification.get("message"), **options)
                elif kind == "push":
                    await self.send_push(notification.get("user_id"), notification.get("title"), notification.get("body"), **options)
                else:
                    raise ValidationError(f"Unknown notification type: {kind}")
                results["successful"] += 1
            except Exception as e:
                results["failed"] += 1
                results["errors"].append({"notification": notification, "error": str(e)})

        for start in range(0, len(notifications), batch_size):
            batch = notifications[start:start + batch_size]
            await asyncio.gather(*(send_one(n) for n in batch))
            if start + batch_size < len(notifications):
                await asyncio.sleep(self.settings.batch_delay_ms / 1000)

        self.logger.info(
            "Bulk notifications completed",
            total=results["total"],
            successful=results["successful"],
            failed=results["failed"],
        )
        return results

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "total_sent": self._stats["total_sent"],
            "successful": self._stats["successful"],
            "failed": self._stats["failed"],
            "by_type": {channel: dict(counts) for channel, counts in self._stats["by_type"].items()},
            "last_sent": self._stats["last_sent"],
            "rate_limit": self.rate_limiter.snapshot(),
        }

    def clear_statistics(self) -> None:
        self._stats = _empty_stats()
        self.logger.info("Notification statistics cleared")

    async def _deliver(self, channel: str, recipient: str, content: str, build) -> Dict[str, Any]:
        self.logger.info("Sending notification", channel=channel, recipient=recipient)
        try:
            payload = build()
            self.rate_limiter.check()
            receipt = await self.transport.send(channel, payload)
        except Exception as e:
            self._update_stats(channel, success=False)
            self.logger.error("Failed to send notification", channel=channel, recipient=recipient, error=str(e))
            raise

        self._update_stats(channel, success=True)
        if self.database is not None and self.settings.enable_logging:
            await self._log_notification(channel, recipient, content, receipt)

        self.logger.info(
            "Notification sent successfully",
            channel=channel,
            recipient=recipient,
            message_id=receipt.get("message_id"),
        )
        return receipt

    def _update_stats(self, channel: str, success: bool) -> None:
        outcome = "successful" if success else "failed"
        self._stats["total_sent"] += 1
        self._stats[outcome] += 1
        self._stats["by_type"][channel]["sent"] += 1
        self._stats["by_type"][channel][outcome] += 1
        self._stats["last_sent"] = datetime.now(timezone.utc).isoformat()

    async def _log_notification(self, channel: str, recipient: str, content: str, receipt: Dict[str, Any]) -> None:
        try:
            await self.database.query(
                """
                INSERT INTO notification_logs (type, recipient, content, message_id, status, created_at)
                VALUES ($1, $2, $3, $4, $5, NOW())
                """,
                [channel, recipient, content, receipt.get("message_id"), receipt.get("status")],
            )
        except Exception as e:
            # A failed log write does not undo a delivered notification
            self.logger.error("Failed to log notification to database", error=str(e), channel=channel)
