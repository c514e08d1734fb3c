# mailer.py
"""
Outgoing mail over SMTP. Route handlers call the send_* helpers; each one
raises MailError when the message could not be handed to the SMTP server.
"""

import logging
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Iterable

import settings

logger = logging.getLogger("giftiz.mailer")


class MailError(RuntimeError):
    pass


def send_mail(to: str, subject: str, body: str, sender: str) -> None:
    msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to

    try:
        if settings.SMTP_SECURE:
            server = smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT,
                                      timeout=settings.SMTP_TIMEOUT_SECONDS,
                                      context=ssl.create_default_context())
        else:
            server = smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.SMTP_TIMEOUT_SECONDS)
        with server:
            if settings.SMTP_REQUIRE_TLS and not settings.SMTP_SECURE:
                server.starttls(context=ssl.create_default_context())
            if settings.SMTP_USER and settings.SMTP_PASS:
                server.login(settings.SMTP_USER, settings.SMTP_PASS)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        raise MailError(f"Could not send '{subject}' to {to}: {e}") from e
    logger.info("Mail '%s' sent to %s", subject, to)


# ---------- Templates ----------
def send_verification_code(to: str, code: str) -> None:
    send_mail(to, "Verify your email", f"Your verification code is: {code}", settings.MAIL_FROM_SECURITY)


def send_login_code(to: str, code: str) -> None:
    send_mail(to, "Giftiz login verification code",
              f"Your verification code is: {code}", settings.MAIL_FROM_SECURITY)


def send_email_login_code(to: str, code: str) -> None:
    send_mail(to, "Your Giftiz login code",
              f"Your one-time login code is: {code}", settings.MAIL_FROM_SECURITY)


def send_reset_code(to: str, code: str) -> None:
    send_mail(to, "Password Reset Code", f"Your password reset code is: {code}", settings.MAIL_FROM_SECURITY)


def send_contact_message(name: str, email: str, message: str) -> None:
    send_mail(settings.SUPPORT_INBOX, f"New contact message from {name}",
              f"From: {name} <{email}>\nMessage:\n{message}", settings.MAIL_FROM_SUPPORT)


def format_purchase_summary(purchase: dict) -> str:
    lines: Iterable[str] = (
        f"{item.get('quantity') or 0}x {item.get('name') or 'Item'} - ILS {float(item.get('priceILS') or 0):.2f}"
        for item in purchase.get("items", [])
    )
    return (
        f"Order number: {purchase['id']}\n"
        f"Customer: {purchase.get('userEmail') or 'unknown user'}\n"
        f"Recorded at: {purchase.get('createdAtHuman') or purchase.get('createdAt')}\n"
        f"Total: ILS {float(purchase.get('totalILS') or 0):.2f}\n\n"
        "Items:\n" + "\n".join(lines)
    )


def send_purchase_summary(purchase: dict) -> None:
    send_mail(settings.PURCHASES_INBOX, "Giftiz - new purchase on the site",
              format_purchase_summary(purchase), settings.MAIL_FROM_SALES)
