"""Failure notification channels for the ingest pipeline."""

import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol

import requests

from .config import IngestSettings
from .exceptions import NotificationError
from .logger import logger
from .schemas import FailureReport


class NotificationChannel(Protocol):
    """Protocol defining the interface for notification channels."""

    def send(self, report: FailureReport) -> None:
        """Deliver a failure report.

        Args:
            report: The report to deliver

        Raises:
            NotificationError: If the report could not be delivered
        """
        ...


class LogNotificationChannel:
    """Channel that only writes the report to the log."""

    def send(self, report: FailureReport) -> None:
        logger.warning(f"[FAILURE REPORT] {report.subject} | {report.render()}")


class HttpMailNotificationChannel:
    """Mail API channel (SendGrid v3 ``mail/send`` request format)."""

    def __init__(self, api_url: str, api_key: str, to_address: str, from_address: str, timeout: float = 10.0):
        """Initialize the channel.

        Args:
            api_url: Mail API endpoint
            api_key: Bearer token for the mail API
            to_address: Recipient of failure reports
            from_address: Sender of failure reports
            timeout: Request timeout in seconds
        """
        self.api_url = api_url
        self.api_key = api_key
        self.to_address = to_address
        self.from_address = from_address
        self.timeout = timeout

    def send(self, report: FailureReport) -> None:
        payload = {
            "personalizations": [{"to": [{"email": self.to_address}]}],
            "from": {"email": self.from_address, "name": "Order Ingest Error"},
            "subject": report.subject,
            "content": [{"type": "text/plain", "value": report.render()}],
        }
        try:
            response = requests.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise NotificationError(f"Mail API rejected report {report.report_id}: {e}") from e


class SmtpNotificationChannel:
    """SMTP mail channel."""

    def __init__(
        self,
        host: str,
        port: int,
        to_address: str,
        from_address: str,
        user: str = "",
        password: str = "",
        starttls: bool = True,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.to_address = to_address
        self.from_address = from_address
        self.user = user
        self.password = password
        self.starttls = starttls
        self.timeout = timeout

    def send(self, report: FailureReport) -> None:
        msg = EmailMessage()
        msg.set_content(report.render())
        msg["Subject"] = report.subject
        msg["From"] = self.from_address
        msg["To"] = self.to_address

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.starttls:
                    server.starttls()
                if self.user:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP delivery of report {report.report_id} failed: {e}") from e


def create_channel(settings: IngestSettings) -> NotificationChannel:
    """Build the channel selected by ``settings.notify_channel``."""
    if settings.notify_channel == "http":
        return HttpMailNotificationChannel(
            api_url=settings.notify_api_url,
            api_key=settings.notify_api_key,
            to_address=settings.notify_to,
            from_address=settings.notify_from,
            timeout=settings.notify_timeout_seconds,
        )
    if settings.notify_channel == "smtp":
        return SmtpNotificationChannel(
            host=settings.smtp_host,
            port=settings.smtp_port,
            to_address=settings.notify_to,
            from_address=settings.notify_from,
            user=settings.smtp_user,
            password=settings.smtp_pass,
            starttls=settings.smtp_starttls,
            timeout=settings.notify_timeout_seconds,
        )
    return LogNotificationChannel()


class FailureNotifier:
    """Reports pipeline failures out of band.

    ``notify`` blocks until the channel has finished and never raises: a
    failed delivery is logged and reported through the return value.
    """

    def __init__(self, channel: Optional[NotificationChannel] = None):
        self.channel = channel or LogNotificationChannel()

    def notify(
        self,
        error: BaseException,
        stage: Optional[str] = None,
        topic: Optional[str] = None,
        partition: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> bool:
        """Send a report about ``error``.

        Args:
            error: The failure to report
            stage: Pipeline stage; defaults to the error's own stage
            topic: Topic of the message being processed
            partition: Partition of the message being processed
            offset: Offset of the message being processed

        Returns:
            bool: True if the channel accepted the report, False otherwise
        """
        try:
            report = FailureReport(
                error_type=type(error).__name__,
                stage=stage or getattr(error, "stage", "unknown"),
                message=str(error) or repr(error),
                topic=topic,
                partition=partition,
                offset=offset,
            )
            self.channel.send(report)
        except Exception as e:
            logger.error(f"Failed to deliver failure report for {type(error).__name__}: {e}")
            return False

        logger.info(f"Failure report sent | report_id={report.report_id} | stage={report.stage}")
        return True
