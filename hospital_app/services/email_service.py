# hospital_app/services/email_service.py
import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import jinja2
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from ..config import get_settings
from . import notification_service
from .notification_service import Notification, NotificationService

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

SUBJECTS = {
    notification_service.APPOINTMENT_BOOKED: "Your appointment is confirmed",
    notification_service.APPOINTMENT_CANCELLED: "Your appointment has been cancelled",
}


class BookingEmailNotifier:
    """Emails the patient when an appointment is booked or cancelled."""

    def __init__(self, client: Any, sender_email: str, template_env: Optional[jinja2.Environment] = None):
        self.client = client
        self.sender_email = sender_email
        self.template_env = template_env or jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=jinja2.select_autoescape(["html"]),
        )

    @classmethod
    def from_settings(cls) -> Optional["BookingEmailNotifier"]:
        settings = get_settings()
        if not settings.email_enabled:
            logger.info("SENDGRID_API_KEY not set - booking emails disabled")
            return None
        return cls(SendGridAPIClient(api_key=settings.sendgrid_api_key), settings.sender_email)

    def register(self, notifier: NotificationService) -> None:
        for event in SUBJECTS:
            notifier.subscribe(event, self.handle)

    def render(self, notification: Notification) -> str:
        template_name = notification.event.replace(".", "_") + ".html"
        template = self.template_env.get_template(template_name)
        return template.render(**notification.payload)

    async def handle(self, notification: Notification) -> None:
        to_email = notification.payload.get("patient_email")
        if not to_email:
            logger.debug(f"No patient email on {notification.event}; skipping")
            return

        mail = Mail(
            from_email=self.sender_email,
            to_emails=to_email,
            subject=SUBJECTS[notification.event],
            html_content=self.render(notification),
        )
        response = await asyncio.to_thread(self.client.send, mail)
        logger.info(f"Sent {notification.event} email for appointment {notification.payload.get('appointment_code')} (status {getattr(response, 'status_code', None)})")
