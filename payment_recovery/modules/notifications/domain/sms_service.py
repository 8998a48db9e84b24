"""
SMS Notification Service

Posts text messages to an HTTP SMS provider. Transport errors and 5xx
responses are retried with exponential backoff; anything else fails fast.
"""

from typing import Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class SmsService:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender_id: str,
        timeout: float = 5.0,
        max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._transport = transport

    async def send(self, recipient: str, body: str) -> bool:
        if not recipient:
            logger.warning("sms_skipped", reason="No recipient")
            return False

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_transient),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
                reraise=False,
            ):
                with attempt:
                    await self._post(recipient, body)
        except RetryError as e:
            logger.error("billing_sms_failed", error=str(e.last_attempt.exception()), attempts=self.max_attempts)
            return False
        except httpx.HTTPError as e:
            logger.error("billing_sms_failed", error=str(e))
            return False

        logger.info("billing_sms_sent", recipient=recipient)
        return True

    async def _post(self, recipient: str, body: str) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={"to": recipient, "from": self.sender_id, "body": body},
            )
            response.raise_for_status()
