"""
Operator alerts on Slack.

Recovery raises an alert when a subscription needs manual review, when a
campaign ends in cancellation, and when money settles on a closed
subscription. Identical alerts inside the dedup window are sent once.
"""

import hashlib
import time
from typing import Callable, Dict, Optional

import structlog
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient
from tenacity import AsyncRetrying, RetryError, retry_if_exception, stop_after_attempt, wait_exponential

logger = structlog.get_logger()


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, SlackApiError) and exc.response.get("error") == "ratelimited"


class SlackService:
    SEVERITY_COLORS = {
        "info": "#10b981",
        "warning": "#f59e0b",
        "critical": "#f43f5e",
    }

    def __init__(
        self,
        bot_token: str,
        channel_id: str,
        client: Optional[AsyncWebClient] = None,
        dedup_window_seconds: int = 3600,
        max_attempts: int = 4,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.client = client or AsyncWebClient(token=bot_token)
        self.channel_id = channel_id
        self.dedup_window_seconds = dedup_window_seconds
        self.max_attempts = max_attempts
        self._monotonic = monotonic
        self._recent: Dict[str, float] = {}

    @staticmethod
    def escape_mrkdwn(text: str) -> str:
        """Neutralize <!channel>-style mentions and links in free text."""
        if not text:
            return ""
        return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")

    def _seen_recently(self, fingerprint: str) -> bool:
        now = self._monotonic()
        self._recent = {k: t for k, t in self._recent.items() if now - t < self.dedup_window_seconds}
        if fingerprint in self._recent:
            return True
        self._recent[fingerprint] = now
        return False

    async def send_alert(self, title: str, message: str, severity: str = "warning") -> bool:
        fingerprint = hashlib.sha256(f"{severity}|{title}|{message}".encode()).hexdigest()
        if self._seen_recently(fingerprint):
            logger.info("slack_alert_suppressed", title=title)
            return True

        attachment = {
            "color": self.SEVERITY_COLORS.get(severity, self.SEVERITY_COLORS["warning"]),
            "blocks": [
                {"type": "header", "text": {"type": "plain_text", "text": title[:150]}},
                {"type": "section", "text": {"type": "mrkdwn", "text": self.escape_mrkdwn(message)}},
                {"type": "context", "elements": [{"type": "mrkdwn", "text": f"severity: *{severity}*"}]},
            ],
        }

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_rate_limited),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=1, max=30),
                reraise=False,
            ):
                with attempt:
                    await self.client.chat_postMessage(channel=self.channel_id, text=title, attachments=[attachment])
        except RetryError:
            logger.error("slack_rate_limit_exhausted", title=title, attempts=self.max_attempts)
            self._recent.pop(fingerprint, None)
            return False
        except SlackApiError as e:
            logger.error("slack_api_error", title=title, error=e.response.get("error"))
            self._recent.pop(fingerprint, None)
            return False

        logger.info("slack_alert_sent", title=title, severity=severity)
        return True
