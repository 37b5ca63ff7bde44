"""Membership confirmation email, sent after the response and never allowed to fail it."""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from datetime import date
from email.message import EmailMessage
from typing import Protocol

from .settings import SmtpSettings


logger = logging.getLogger(__name__)

SUBJECT = "Welcome to CSI NMAMIT Executive Membership!"


class MembershipNotifier(Protocol):
    def send_membership_confirmation(self, name: str, email: str, plan_label: str, usn: str) -> bool: ...


def render_confirmation(name: str, plan_label: str, usn: str, *, registered_on: date | None = None) -> tuple[str, str]:
    registered = (registered_on or date.today()).strftime("%d/%m/%Y")
    text = (
        f"Hello {name},\n\n"
        "Congratulations! You are now an Executive Member of the Computer Society of India (CSI) "
        "through the NMAMIT Student Branch. Your payment has been processed and your membership is active.\n\n"
        f"Name: {name}\n"
        f"USN: {usn}\n"
        f"Membership Plan: {plan_label}\n"
        f"Registration Date: {registered}\n\n"
        "CSI NMAMIT\n"
    )
    safe_name = html.escape(name)
    body = f"""<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h2 style="color: #333;">Hello {safe_name}!</h2>
  <p style="color: #555; line-height: 1.6;">
    Congratulations! You are now an <strong>Executive Member</strong> of the Computer Society of India (CSI)
    through the NMAMIT Student Branch. Your payment has been processed and your membership is active.
  </p>
  <ul style="color: #555; line-height: 1.8;">
    <li><strong>Name:</strong> {safe_name}</li>
    <li><strong>USN:</strong> {html.escape(usn)}</li>
    <li><strong>Membership Plan:</strong> {html.escape(plan_label)}</li>
    <li><strong>Registration Date:</strong> {registered}</li>
  </ul>
  <p style="color: #888; font-size: 12px;">CSI NMAMIT - Computer Society of India</p>
</div>"""
    return text, body


class SmtpNotifier:
    def __init__(self, settings: SmtpSettings, *, timeout_seconds: int = 20):
        self.settings = settings
        self.timeout_seconds = timeout_seconds

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if self.settings.allow_invalid_certs:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def send_membership_confirmation(self, name: str, email: str, plan_label: str, usn: str) -> bool:
        if not self.settings.configured:
            logger.warning("SMTP configuration missing; membership email to %s not sent", email)
            return False

        text, body = render_confirmation(name, plan_label, usn)
        message = EmailMessage()
        message["Subject"] = SUBJECT
        message["From"] = self.settings.sender
        message["To"] = email
        message.set_content(text)
        message.add_alternative(body, subtype="html")

        with smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.timeout_seconds) as smtp:
            smtp.starttls(context=self._tls_context())
            smtp.login(self.settings.user, self.settings.password)
            smtp.send_message(message)
        logger.info("membership email sent to %s", email)
        return True


def notify_membership_safely(
    notifier: MembershipNotifier | None,
    *,
    name: str,
    email: str,
    plan_label: str,
    usn: str,
) -> bool:
    if notifier is None:
        return False
    if not name or not email:
        logger.info("skipping membership email: missing name or email")
        return False
    try:
        return bool(notifier.send_membership_confirmation(name, email, plan_label, usn or "N/A"))
    except Exception as exc:
        logger.warning("membership email to %s failed: %s", email, exc)
        return False
