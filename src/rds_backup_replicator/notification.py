from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Protocol

from botocore.exceptions import BotoCoreError, ClientError
from jinja2 import Environment, StrictUndefined, select_autoescape

from .errors import error_message
from .models import BackupResult

logger = logging.getLogger(__name__)

SUCCESS_SUBJECT = "RDS Backup Successful"
FAILURE_SUBJECT = "RDS Backup Failed"

_SUCCESS_TEMPLATE = """\
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif;">
    <h2>RDS Backup Successful</h2>
    <p>The RDS backup has been completed successfully.</p>
    <ul>
        <li><strong>Database:</strong> {{ result.db_identifier }}</li>
        <li><strong>Snapshot ID:</strong> {{ result.snapshot_id }}</li>
        {% if result.target_snapshot_id %}<li><strong>Replica Snapshot ID:</strong> {{ result.target_snapshot_id }}</li>{% endif %}
        <li><strong>Backup Time:</strong> {{ result.backup_time }}</li>
        <li><strong>S3 Location:</strong>{% for location in result.locations %}<br>{{ location }}{% else %} none{% endfor %}</li>
        {% if result.cleanup %}<li><strong>Cleanup:</strong> {{ result.cleanup.summary() }}</li>{% endif %}
    </ul>
    <p>This is an automated message. Please do not reply.</p>
</body>
</html>
"""

_FAILURE_TEMPLATE = """\
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif;">
    <h2 style="color: #ff0000;">RDS Backup Failed</h2>
    <p>The RDS backup operation has encountered an error.</p>
    <ul>
        <li><strong>Database:</strong> {{ result.db_identifier }}</li>
        <li><strong>Attempted Snapshot ID:</strong> {{ result.snapshot_id or "not created" }}</li>
        <li><strong>Error Time:</strong> {{ result.backup_time }}</li>
        <li><strong>Error Message:</strong> {{ result.error_message }}</li>
    </ul>
    <p>Please check the AWS console and logs for more details.</p>
    <p>This is an automated message. Please do not reply.</p>
</body>
</html>
"""

_environment = Environment(
    autoescape=select_autoescape(default_for_string=True, default=True),
    undefined=StrictUndefined,
)


class Notifier(Protocol):
    def deliver(self, result: BackupResult, *, success: bool) -> None: ...


@dataclass(frozen=True)
class EmailMessage:
    recipient: str
    subject: str
    body: str


def render_email(result: BackupResult, *, success: bool, recipient: str) -> EmailMessage:
    template = _environment.from_string(_SUCCESS_TEMPLATE if success else _FAILURE_TEMPLATE)
    return EmailMessage(
        recipient=recipient,
        subject=SUCCESS_SUBJECT if success else FAILURE_SUBJECT,
        body=template.render(result=result),
    )


class SesEmailNotifier:
    def __init__(self, *, ses_client: Any, sender: str, recipient: str) -> None:
        self.ses_client = ses_client
        self.sender = sender
        self.recipient = recipient

    def deliver(self, result: BackupResult, *, success: bool) -> None:
        message = render_email(result, success=success, recipient=self.recipient)
        try:
            self.ses_client.send_email(
                Source=self.sender,
                Destination={"ToAddresses": [message.recipient]},
                Message={
                    "Subject": {"Charset": "UTF-8", "Data": message.subject},
                    "Body": {"Html": {"Charset": "UTF-8", "Data": message.body}},
                },
            )
        except (ClientError, BotoCoreError) as error:
            raise RuntimeError(f"failed to send email: {error_message(error)}") from error
        logger.info("Sent '%s' notification to %s", message.subject, message.recipient)


class LoggingNotifier:
    def deliver(self, result: BackupResult, *, success: bool) -> None:
        if success:
            logger.info("Backup of %s succeeded: %s", result.db_identifier, result.s3_location or "no export")
        else:
            logger.error("Backup of %s failed: %s", result.db_identifier, result.error_message)


def build_notifier(*, recipient: str, sender: str, region: str, client_factory: Callable[[str, str], Any]) -> Notifier:
    if not recipient.strip():
        return LoggingNotifier()
    return SesEmailNotifier(ses_client=client_factory("ses", region), sender=sender, recipient=recipient.strip())
