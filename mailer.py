import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape

from config import get_settings

logger = logging.getLogger(__name__)

EMAIL_SUBJECTS = {
    "event": "Известие за събитие - Технофолио",
    "credit": "Известие за кредити - Технофолио",
    "absence": "Известие за отсъствия - Технофолио",
    "sanction": "Известие за санкции - Технофолио",
}
DEFAULT_SUBJECT = "Известие от Технофолио"
SIGNATURE = "Поздрави,\nЕкипът на Технофолио"


def subject_for(category: str) -> str:
    return EMAIL_SUBJECTS.get(category, DEFAULT_SUBJECT)


class Mailer:
    """SMTP transport. Without SMTP_HOST every send is logged and reported as not sent."""

    def __init__(self, settings=None):
        self.settings = settings or get_settings()

    @property
    def configured(self) -> bool:
        return bool(self.settings.SMTP_HOST)

    def send(self, to_email: str, subject: str, text: str, html: str = None) -> bool:
        if not self.configured:
            logger.info("Email simulation: To=%s, Subject=%s", to_email, subject)
            return False

        msg = MIMEMultipart("alternative")
        msg["From"] = self.settings.MAIL_FROM
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(text, "plain", "utf-8"))
        if html:
            msg.attach(MIMEText(html, "html", "utf-8"))

        with smtplib.SMTP(self.settings.SMTP_HOST, self.settings.SMTP_PORT, timeout=30) as server:
            if self.settings.SMTP_USE_TLS:
                server.starttls()
            if self.settings.SMTP_USER:
                server.login(self.settings.SMTP_USER, self.settings.SMTP_PASSWORD)
            server.send_message(msg)
        logger.info("Email sent to %s (%s)", to_email, subject)
        return True

    def send_notification(self, user, notification) -> bool:
        text = f"{notification.title}\n\n{notification.message}\n\n{SIGNATURE}"
        html = (
            '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
            f'<h2 style="color: #4a4a4a; text-align: center;">{escape(notification.title)}</h2>'
            f"<p>{escape(notification.message)}</p>"
            '<p style="margin-top: 30px; font-size: 12px; color: #777;">С уважение,<br>Екипът на Технофолио</p>'
            "</div>"
        )
        return self.send(user.email, subject_for(notification.category), text, html)

    def send_password_reset(self, user, token: str) -> bool:
        link = f"{self.settings.FRONTEND_URL}/reset-password/{token}"
        text = (
            f"Здравейте, {user.first_name},\n\n"
            f"Получихме заявка за смяна на паролата Ви. Използвайте връзката по-долу:\n{link}\n\n"
            f"Връзката е валидна {self.settings.PASSWORD_RESET_EXPIRE_MINUTES} минути.\n\n{SIGNATURE}"
        )
        return self.send(user.email, "Възстановяване на парола - Технофолио", text)


def get_mailer() -> Mailer:
    return Mailer()
