"""
Email Notification Service

Sends customer billing notices via SMTP.
"""

import asyncio
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional
import structlog

logger = structlog.get_logger()


class EmailService:
    """
    SMTP sender for billing notices.

    smtplib is blocking, so each send runs in a worker thread.
    """

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int,
        smtp_user: Optional[str],
        smtp_password: Optional[str],
        from_email: str,
        timeout: float = 5.0,
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email
        self.timeout = timeout

    async def send(self, recipient: str, subject: str, body: str) -> bool:
        if not recipient:
            logger.warning("email_skipped", reason="No recipient")
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = recipient
        msg.attach(MIMEText(body, "plain"))

        try:
            await asyncio.to_thread(self._deliver, recipient, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error("billing_email_failed", error=str(e))
            return False

        logger.info("billing_email_sent", recipient=recipient, subject=subject)
        return True

    def _deliver(self, recipient: str, message: str) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            server.starttls()
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [recipient], message)
