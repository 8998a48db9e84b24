"""
Notification Dispatcher

Routes rendered templates to email / SMS and operator alerts to Slack.
Delivery is fire-and-forget: failures are logged, never raised, and never
roll back recovery state.

Recovery services collect messages in a `NotificationOutbox` while their
transaction is open and hand it to the dispatcher only after commit, so a
rolled-back operation never notifies anyone.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import structlog

from payment_recovery.modules.notifications.domain import templates
from payment_recovery.modules.notifications.domain.email_service import EmailService
from payment_recovery.modules.notifications.domain.sms_service import SmsService
from payment_recovery.modules.notifications.domain.slack import SlackService
from payment_recovery.shared.core.config import Settings, get_settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class OutboundMessage:
    template_id: str
    channel: str
    recipient: Optional[str]
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OpsAlert:
    title: str
    message: str
    severity: str = "warning"


class NotificationOutbox:
    """Messages staged by one recovery operation, released after commit."""

    def __init__(self):
        self.messages: List[OutboundMessage] = []
        self.alerts: List[OpsAlert] = []

    def add(self, template_id: str, channel: str, recipient: Optional[str], **context: Any) -> None:
        self.messages.append(OutboundMessage(template_id, channel, recipient, context))

    def alert(self, title: str, message: str, severity: str = "warning") -> None:
        self.alerts.append(OpsAlert(title, message, severity))

    def __len__(self) -> int:
        return len(self.messages) + len(self.alerts)

    def release(self, dispatcher: "NotificationDispatcher") -> int:
        for msg in self.messages:
            dispatcher.send_later(msg.template_id, msg.channel, msg.recipient, msg.context)
        for alert in self.alerts:
            dispatcher.alert_later(alert.title, alert.message, alert.severity)
        released = len(self)
        self.messages.clear()
        self.alerts.clear()
        return released


class NotificationDispatcher:
    def __init__(
        self,
        email: Optional[EmailService] = None,
        sms: Optional[SmsService] = None,
        slack: Optional[SlackService] = None,
    ):
        self.email = email
        self.sms = sms
        self.slack = slack
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "NotificationDispatcher":
        settings = settings or get_settings()
        email = None
        if settings.SMTP_HOST:
            email = EmailService(
                smtp_host=settings.SMTP_HOST,
                smtp_port=settings.SMTP_PORT,
                smtp_user=settings.SMTP_USER,
                smtp_password=settings.SMTP_PASSWORD,
                from_email=settings.SMTP_FROM,
                timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
            )
        sms = None
        if settings.SMS_API_URL and settings.SMS_API_KEY:
            sms = SmsService(
                api_url=settings.SMS_API_URL,
                api_key=settings.SMS_API_KEY,
                sender_id=settings.SMS_SENDER_ID,
                timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
            )
        slack = None
        if settings.SLACK_BOT_TOKEN and settings.SLACK_CHANNEL_ID:
            slack = SlackService(settings.SLACK_BOT_TOKEN, settings.SLACK_CHANNEL_ID)
        return cls(email=email, sms=sms, slack=slack)

    async def send(
        self,
        template_id: str,
        channel: str,
        recipient: Optional[str],
        context: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Render and deliver one message. Returns the provider ack; never raises."""
        try:
            subject, body = templates.render(template_id, context)
        except KeyError:
            logger.error("notification_unknown_template", template_id=template_id)
            return False

        if not recipient:
            logger.warning("notification_skipped", template_id=template_id, channel=channel, reason="no_recipient")
            return False

        try:
            if channel == "email":
                if not self.email:
                    logger.info("notification_channel_unconfigured", channel=channel, template_id=template_id)
                    return False
                return await self.email.send(recipient, subject, body)
            if channel == "sms":
                if not self.sms:
                    logger.info("notification_channel_unconfigured", channel=channel, template_id=template_id)
                    return False
                return await self.sms.send(recipient, body)
        except Exception as e:  # noqa: BLE001 - delivery must never break recovery
            logger.error("notification_send_failed", template_id=template_id, channel=channel, error=str(e))
            return False

        logger.error("notification_unknown_channel", channel=channel, template_id=template_id)
        return False

    async def send_ops_alert(self, title: str, message: str, severity: str = "warning") -> bool:
        if not self.slack:
            logger.warning("ops_alert_unrouted", title=title, severity=severity)
            return False
        try:
            return await self.slack.send_alert(title, message, severity)
        except Exception as e:  # noqa: BLE001
            logger.error("ops_alert_failed", title=title, error=str(e))
            return False

    def send_later(self, template_id: str, channel: str, recipient: Optional[str], context: Dict[str, Any]) -> None:
        self._track(asyncio.create_task(self.send(template_id, channel, recipient, context)))

    def alert_later(self, title: str, message: str, severity: str = "warning") -> None:
        self._track(asyncio.create_task(self.send_ops_alert(title, message, severity)))

    def _track(self, task: asyncio.Task) -> None:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
