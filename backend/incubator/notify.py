import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Iterable

logger = logging.getLogger(__name__)

EMAIL_OUTBOX: list[tuple[str, str, str]] = []

APP_URL = os.getenv("APP_URL", "http://localhost:3000")

# purpose: render request lifecycle templates and deliver them by email
# status: active
TEMPLATES: dict[str, tuple[str, str]] = {
    "request_created": (
        "New Material Request Created",
        "{request_number}: {title} was created by {requester_name} for {team_name}.",
    ),
    "request_submitted": (
        "Material Request Submitted",
        "{request_number}: {title} from {team_name} is awaiting review.",
    ),
    "request_pending_approval": (
        "Material Request Pending Your Approval",
        "{request_number}: {title} is waiting for your sign-off at approval level {approval_level}.",
    ),
    "request_approved": (
        "Material Request Approved",
        "{request_number}: {title} was approved at level {approval_level}.",
    ),
    "request_declined": (
        "Material Request Declined",
        "{request_number}: {title} was declined. {comments}",
    ),
    "approval_delegated": (
        "Approval Delegated to You",
        "Approval level {approval_level} of {request_number}: {title} was delegated to you.",
    ),
    "request_cancelled": (
        "Material Request Cancelled",
        "{request_number}: {title} was cancelled. {reason}",
    ),
    "request_delivered": (
        "Material Request Delivered",
        "{request_number}: {title} was delivered. {delivery_notes}",
    ),
    "request_status_changed": (
        "Material Request Status Updated",
        "{request_number}: {title} moved from {old_status} to {new_status}. {notes}",
    ),
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return ""


def render_template(template_key: str, data: dict[str, Any]) -> tuple[str, str]:
    """Return the subject and body for a notification template."""

    try:
        subject, body = TEMPLATES[template_key]
    except KeyError as exc:
        raise ValueError(f"Unknown notification template {template_key}") from exc
    values = _Defaults({key: "" if value is None else value for key, value in data.items()})
    message = body.format_map(values).strip()
    request_id = data.get("request_id")
    if request_id:
        message = f"{message}\n\n{APP_URL}/requests/{request_id}"
    return subject, message


def send_email(to_email: str, subject: str, message: str):
    if os.getenv("TESTING") == "1":
        EMAIL_OUTBOX.append((to_email, subject, message))
        return
    server = os.getenv("SMTP_SERVER")
    if not server:
        logger.debug("SMTP_SERVER not configured; dropping email to %s", to_email)
        return
    from_addr = os.getenv("EMAIL_FROM", "noreply@example.com")
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_email
    msg.set_content(message)
    with smtplib.SMTP(server) as s:
        s.send_message(msg)


def notify(recipients: Iterable[str], template_key: str, data: dict[str, Any]) -> int:
    """Render a template once and send it to every recipient; returns the count sent."""

    subject, message = render_template(template_key, data)
    sent = 0
    for recipient in recipients:
        send_email(recipient, subject, message)
        sent += 1
    return sent
