import logging
import smtplib
from email.mime.text import MIMEText
from typing import Tuple

log = logging.getLogger(__name__)

INVITE_SUBJECT = "Your Hiking Workshop Access is Ready!"


class SmtpMailer:
    """
    Plain-text mail over SMTP with STARTTLS + login (Gmail app password by default).
    send_mail raises on failure; callers decide whether that is best-effort.
    """

    def __init__(self, user: str, password: str, host: str = "smtp.gmail.com", port: int = 587, timeout: int = 20):
        self.user = user
        self._password = password
        self.host = host
        self.port = port
        self.timeout = timeout

    def send_mail(self, to: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.user
        msg["To"] = to

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
            server.starttls()
            server.login(self.user, self._password)
            server.send_message(msg)
        log.info("mail_sent to=%s subject=%s", to, subject)


def mailer_from_settings(settings) -> SmtpMailer:
    return SmtpMailer(
        settings.email_user,
        settings.email_password,
        host=settings.smtp_host,
        port=settings.smtp_port,
    )


def _format_amount(amount) -> str:
    if float(amount).is_integer():
        return str(int(amount))
    return f"{float(amount):.2f}"


def compose_invite_email(amount, currency: str, payment_id: str, site_url: str, support_email: str) -> Tuple[str, str]:
    """Returns (subject, body) for the post-payment workshop invite."""
    amount_txt = _format_amount(amount)
    prefix = "₹" if (currency or "INR").upper() == "INR" else f"{currency} "
    body = "\n".join([
        "Your Hiking Adventure Begins Now!",
        "",
        "Hello Adventurer,",
        "",
        "Your payment for the Hiking Workshop has been processed.",
        "",
        "WORKSHOP ACCESS",
        "• Your account is now active",
        f"• Log in or sign up at: {site_url}",
        "• Use the email address you paid with to access the workshop.",
        "",
        "PAYMENT DETAILS",
        f"• Amount Paid: {prefix}{amount_txt}",
        f"• Payment ID: {payment_id}",
        "",
        "NEXT STEPS",
        f"1. Visit {site_url}",
        "2. Log in with your registered email",
        "3. Explore your workshop details",
        "",
        "Happy Hiking!",
        "",
        f"Questions? Contact us at {support_email}",
    ])
    return INVITE_SUBJECT, body
