import smtplib
import ssl
from email.message import EmailMessage
from typing import Callable, Optional

from panelauth.core import config


def send_email(to: str, subject: str, html: str, text: str | None = None) -> None:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"{config.FROM_NAME} <{config.FROM_EMAIL}>"
    msg["To"] = to
    if text:
        msg.set_content(text)
    msg.add_alternative(html, subtype="html")

    ctx = ssl.create_default_context()
    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=10) as s:
        s.starttls(context=ctx)
        if config.SMTP_USER and config.SMTP_PASS:
            s.login(config.SMTP_USER, config.SMTP_PASS)
        s.send_message(msg)


def get_mailer() -> Optional[Callable[..., None]]:
    return send_email if config.SMTP_HOST else None
