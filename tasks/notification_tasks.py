import smtplib
from email.message import EmailMessage
from celery import current_app

from core.config import settings
from core.logging import get_logger

logger = get_logger(__name__)


@current_app.task(bind=True, max_retries=3)
def send_notification_task(self, to_email: str, subject: str, body: str):
    """
    Deliver a plain-text notification over SMTP.
    Retries up to 3 times on failure.
    """
    # Nothing leaves the process in tests or without SMTP credentials
    if settings.TESTING or not settings.SMTP_PASSWORD:
        logger.debug("Notification to %s skipped: %s", to_email, subject)
        return {"status": "skipped", "to": to_email}

    try:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = settings.SMTP_FROM or settings.SMTP_USERNAME
        msg["To"] = to_email
        msg.set_content(body)

        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
            server.starttls()
            if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
                server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
            server.send_message(msg)

        return {"status": "sent", "to": to_email, "subject": subject}

    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Notification to %s failed (attempt %d): %s", to_email, self.request.retries + 1, exc)
        # Retry with exponential backoff
        countdown = min(2 ** self.request.retries, 60)  # Max 60 seconds
        raise self.retry(exc=exc, countdown=countdown)
