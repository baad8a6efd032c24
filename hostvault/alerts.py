"""
Alert transports for health check escalations.

- smtp: deliver through an SMTP relay
- mail: pipe the message into the local ``mail`` command
- log:  write the alert to the application log only
"""

import logging
import shutil
import smtplib
import socket
import subprocess
from email.message import EmailMessage
from email.utils import formatdate
from typing import Tuple

logger = logging.getLogger(__name__)


class AlertError(Exception):
    """Raised when an alert cannot be delivered."""
    pass


class SmtpAlertTransport:
    """Delivers alerts as plain text email via SMTP."""

    def __init__(self, alert_settings, timeout: int = 30):
        self.settings = alert_settings
        self.timeout = timeout

    def _prepare_message(self, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg['Subject'] = subject
        msg['From'] = self.settings.sender
        msg['To'] = self.settings.destination
        msg['Date'] = formatdate(localtime=True)
        msg.set_content(body)
        return msg

    def send(self, subject: str, body: str):
        """
        Send one alert.

        Raises:
            AlertError: If the SMTP exchange fails
        """
        config = self.settings
        msg = self._prepare_message(subject, body)
        try:
            with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=self.timeout) as smtp:
                if config.smtp_use_tls:
                    smtp.starttls()
                if config.smtp_username and config.smtp_password:
                    smtp.login(config.smtp_username, config.smtp_password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise AlertError(f"SMTP delivery to {config.destination} failed: {e}")

        logger.info(f"Alert sent to {config.destination}: {subject}")


class MailCommandAlertTransport:
    """Delivers alerts through the system ``mail`` command."""

    def __init__(self, destination: str, command: str = 'mail', timeout: int = 60):
        self.destination = destination
        self.command = command
        self.timeout = timeout

    def send(self, subject: str, body: str):
        """
        Send one alert.

        Raises:
            AlertError: If the command is missing or fails
        """
        if shutil.which(self.command) is None:
            raise AlertError(f"'{self.command}' command not available")

        try:
            subprocess.run(
                [self.command, '-s', subject, self.destination],
                input=body,
                text=True,
                capture_output=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.TimeoutExpired:
            raise AlertError(f"'{self.command}' timed out after {self.timeout}s")
        except subprocess.CalledProcessError as e:
            raise AlertError(f"'{self.command}' failed with exit code {e.returncode}: {e.stderr.strip()}")
        except OSError as e:
            raise AlertError(f"Failed to run '{self.command}': {e}")

        logger.info(f"Alert sent to {self.destination}: {subject}")


class LogAlertTransport:
    """Writes alerts to the log; used when no destination is configured."""

    def send(self, subject: str, body: str):
        logger.warning(f"ALERT: {subject}\n{body}")


def create_alert_transport(alert_settings):
    """Build the transport selected by the alert settings."""
    if alert_settings.transport == 'log' or not alert_settings.destination:
        return LogAlertTransport()
    if alert_settings.transport == 'mail':
        return MailCommandAlertTransport(alert_settings.destination)
    return SmtpAlertTransport(alert_settings)


def format_health_alert(report) -> Tuple[str, str]:
    """
    Render a health report as an alert subject and body.

    Returns:
        Tuple of (subject, body)
    """
    hostname = socket.gethostname()
    subject = f"Backup health {report.overall.value.upper()} on {hostname}"

    lines = [
        f"Backup health check on {hostname} at {report.checked_at:%Y-%m-%d %H:%M:%S}",
        f"Overall status: {report.overall.value}",
        "",
    ]
    for domain in report.domains:
        lines.append(f"[{domain.domain}] {domain.status.value}")
        if domain.latest_artifact:
            lines.append(f"  Latest backup: {domain.latest_artifact} ({domain.age_days} days old)")
        for reason in domain.reasons:
            lines.append(f"  - {reason}")
        for warning in domain.warnings:
            lines.append(f"  (warning) {warning}")
        lines.append("")

    return subject, "\n".join(lines)
