import logging
import smtplib
from email.message import EmailMessage

from app.core.config import settings

logger = logging.getLogger(__name__)


def send_mail(to: str, subject: str, html: str) -> bool:
    """
    Envoi SMTP (STARTTLS). Sans SMTP_HOST configuré, l'envoi est ignoré
    et loggé : retourne False.
    """
    if not settings.SMTP_HOST:
        logger.info("SMTP non configuré : email '%s' pour %s ignoré", subject, to)
        return False

    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(html, subtype="html")

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30) as s:
        s.starttls()
        if settings.SMTP_USER:
            s.login(settings.SMTP_USER, settings.SMTP_PASS)
        s.send_message(msg)
    return True
