"""Run-completion notifications."""

from __future__ import annotations

import logging
import smtplib
from dataclasses import asdict, dataclass
from email.message import EmailMessage
from typing import Protocol

from gitwhisper import config
from gitwhisper.errors import AuthError, TransientError

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    run_id: int
    project_id: int
    project_name: str
    repo_url: str
    files_indexed: int
    files_unembedded: int
    files_failed: int
    commits: int
    elapsed_secs: float

    def to_dict(self) -> dict:
        return asdict(self)

    def subject(self) -> str:
        return f"gitwhisper: {self.project_name} is ready"

    def render(self) -> str:
        minutes, seconds = divmod(int(round(self.elapsed_secs)), 60)
        lines = [
            f"Indexing of {self.repo_url} has finished.",
            "",
            f"Files indexed:     {self.files_indexed}",
            f"Files unembedded:  {self.files_unembedded}",
            f"Files failed:      {self.files_failed}",
            f"Commits analyzed:  {self.commits}",
            f"Processing time:   {minutes}m {seconds:02d}s",
        ]
        return "\n".join(lines)


class Notifier(Protocol):
    def send(self, report: RunReport) -> None:
        ...


class LogNotifier:
    """Writes the report to the log. Used when no mail server is configured."""

    def send(self, report: RunReport) -> None:
        logger.info("%s\n%s", report.subject(), report.render())


class SmtpNotifier:
    """Emails the report through an SMTP server with STARTTLS."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        to_addr: str = "",
        from_addr: str = "",
        timeout: float | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._to = to_addr
        self._from = from_addr or config.NOTIFY_EMAIL_FROM
        self._timeout = timeout if timeout is not None else config.STAGE_TIMEOUT_SECS

    def send(self, report: RunReport) -> None:
        msg = EmailMessage()
        msg["Subject"] = report.subject()
        msg["From"] = self._from
        msg["To"] = self._to
        msg.set_content(report.render())
        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as smtp:
                smtp.starttls()
                if self._user:
                    smtp.login(self._user, self._password)
                smtp.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            raise AuthError(f"SMTP login rejected: {e}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientError(f"Could not send notification email: {e}") from e
        logger.info("Sent completion email for run %d to %s", report.run_id, self._to)


def notifier_from_config() -> Notifier:
    if config.SMTP_HOST and config.NOTIFY_EMAIL_TO:
        return SmtpNotifier(
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            user=config.SMTP_USER,
            password=config.SMTP_PASSWORD,
            to_addr=config.NOTIFY_EMAIL_TO,
        )
    return LogNotifier()
