"""
Checkout confirmation emails.

Bodies are rendered from jinja2 templates in both HTML and plain text and sent
over SMTP. The transport is a small callable-style object so the workflow can
be exercised without a mail server.
"""
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol, TypedDict

from jinja2 import Template

from attendance_api.config import (
    EMAIL_SUBJECT,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_SENDER,
    SMTP_TIMEOUT_SECONDS,
    SMTP_USE_TLS,
    SMTP_USERNAME,
)

logger = logging.getLogger(__name__)

SYSTEM_NAME = "Exam Attendance System"

HTML_TEMPLATE = Template(
    """<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; color: #222;">
  <h2>Exam checkout confirmed</h2>
  <p>Dear {{ student_name }},</p>
  <p>You have been checked out of <strong>{{ exam_name }}</strong> ({{ course_name }}).</p>
  <table cellpadding="4" style="border-collapse: collapse;">
    <tr><td><strong>Check-in</strong></td><td>{{ check_in_time }}</td></tr>
    <tr><td><strong>Check-out</strong></td><td>{{ check_out_time }}</td></tr>
    <tr><td><strong>Room</strong></td><td>{{ exam_room }}</td></tr>
    <tr><td><strong>Recorded by</strong></td><td>{{ device_name }}</td></tr>
  </table>
  <p style="font-size: 12px; color: #777;">{{ system_name }}</p>
</body>
</html>
""",
    autoescape=True,
)

TEXT_TEMPLATE = Template(
    """Dear {{ student_name }},

You have been checked out of {{ exam_name }} ({{ course_name }}).

Check-in:    {{ check_in_time }}
Check-out:   {{ check_out_time }}
Room:        {{ exam_room }}
Recorded by: {{ device_name }}

--
{{ system_name }}
"""
)


class CheckoutEmail(TypedDict):
    email: str
    student_name: str
    exam_name: str
    course_name: str
    check_in_time: str
    check_out_time: str
    exam_room: str
    device_name: str


class EmailDeliveryError(RuntimeError):
    pass


class EmailTransport(Protocol):
    def send(self, message: CheckoutEmail) -> None: ...


def render_bodies(message: CheckoutEmail) -> tuple[str, str]:
    context = {**message, "system_name": SYSTEM_NAME}
    return HTML_TEMPLATE.render(**context), TEXT_TEMPLATE.render(**context)


def build_mime_message(message: CheckoutEmail, sender: str) -> MIMEMultipart:
    html_body, text_body = render_bodies(message)
    mime = MIMEMultipart("alternative")
    mime["From"] = sender
    mime["To"] = message["email"]
    mime["Subject"] = f"{EMAIL_SUBJECT} - {message['exam_name']}"
    mime.attach(MIMEText(text_body, "plain", "utf-8"))
    mime.attach(MIMEText(html_body, "html", "utf-8"))
    return mime


class SmtpTransport:
    def __init__(
        self,
        *,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        username: str = SMTP_USERNAME,
        password: str = SMTP_PASSWORD,
        sender: str = SMTP_SENDER,
        use_tls: bool = SMTP_USE_TLS,
        timeout: float = SMTP_TIMEOUT_SECONDS,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.use_tls = use_tls
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.host and self.sender)

    def send(self, message: CheckoutEmail) -> None:
        if not self.is_configured():
            raise EmailDeliveryError("SMTP transport is not configured.")

        mime = build_mime_message(message, self.sender)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls(context=ssl.create_default_context())
                if self.username:
                    server.login(self.username, self.password)
                server.send_message(mime)
        except (smtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryError(str(exc) or exc.__class__.__name__) from exc

        logger.info("Checkout email sent to %s", message["email"])
