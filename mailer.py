"""
Transactional email.

Sending is always best-effort: the ``send_*_email`` helpers log failures and
return False instead of raising, and the routes hand them to
``BackgroundTasks`` so responses never wait on SMTP.
"""
import html
import logging
import os
import smtplib
import tempfile
import uuid
from datetime import datetime, timezone
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from otp import OTP_TTL

logger = logging.getLogger(__name__)

BRAND = "MegaMart"


def is_production() -> bool:
    return os.getenv("ENVIRONMENT", "development").strip().lower() == "production"


# ----------------------- Transports -----------------------
class SmtpTransport:
    def __init__(self, host: str, port: int, user: str, password: str):
        self.host = host
        self.port = port
        self.user = user
        self.password = password

    def send(self, message: EmailMessage) -> dict:
        if self.port == 465:
            with smtplib.SMTP_SSL(self.host, self.port, timeout=10) as server:
                server.login(self.user, self.password)
                server.send_message(message)
        else:
            with smtplib.SMTP(self.host, self.port, timeout=10) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                server.login(self.user, self.password)
                server.send_message(message)
        return {"transport": "smtp", "to": message["To"]}


class PreviewTransport:
    """Writes messages to disk as .eml files instead of delivering them."""

    def __init__(self, directory: Optional[str] = None):
        self.directory = Path(directory or os.path.join(tempfile.gettempdir(), "storefront-mail"))

    def send(self, message: EmailMessage) -> dict:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{uuid.uuid4().hex}.eml"
        path.write_bytes(bytes(message))
        logger.info("Preview email to %s written to %s", message["To"], path.as_uri())
        return {"transport": "preview", "to": message["To"], "path": str(path)}


def build_transport():
    """SMTP transport from the environment, or None when it is not configured."""
    host = os.getenv("SMTP_HOST", "").strip()
    port = os.getenv("SMTP_PORT", "").strip()
    user = os.getenv("SMTP_USER", "").strip()
    password = os.getenv("SMTP_PASS", "").strip()
    if not (host and port and user and password):
        return None
    return SmtpTransport(host, int(port), user, password)


def send_mail(to: str, subject: str, text: str, html_body: str) -> Optional[dict]:
    """Send one message. Returns None when skipped; transport errors propagate."""
    transport = build_transport()
    if transport is None:
        if is_production():
            logger.warning("SMTP not configured in production. Skipping email to %s", to)
            return None
        transport = PreviewTransport(os.getenv("MAIL_PREVIEW_DIR"))

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = os.getenv("MAIL_FROM", f"{BRAND} <no-reply@megamart.local>")
    message["To"] = to
    message.set_content(text)
    message.add_alternative(html_body, subtype="html")
    return transport.send(message)


# ----------------------- Templates -----------------------
def format_otp_email(name: Optional[str], code: str) -> dict:
    minutes = int(OTP_TTL.total_seconds() // 60)
    who = name or "there"
    subject = f"Your {BRAND} verification code: {code}"
    text = (
        f"Hi {who},\n\n"
        f"Your one-time verification code is: {code}\n"
        f"This code will expire in {minutes} minutes.\n\n"
        "If you did not attempt to log in, please ignore this email."
    )
    body = f"""
    <div style="font-family:Arial,Helvetica,sans-serif;line-height:1.55;color:#111">
      <h2 style="margin:0 0 10px">Your {BRAND} verification code</h2>
      <p>Hi {html.escape(who)},</p>
      <p>Your one-time verification code is:</p>
      <div style="font-size:28px;font-weight:700;letter-spacing:4px;margin:10px 0 6px">{code}</div>
      <p style="margin:0 0 10px;color:#444">This code will expire in {minutes} minutes.</p>
      <p style="color:#666;font-size:12px">If you did not attempt to log in, you can safely ignore this email.</p>
    </div>
    """
    return {"subject": subject, "text": text, "html": body}


def format_login_email(name: Optional[str], when: str, ip: str, ua: str) -> dict:
    who = name or "there"
    subject = f"Successful verification: welcome to {BRAND}"
    intro = f"Your login has been verified successfully. Welcome back to {BRAND}!"
    footer = "If this wasn't you, please reset your password immediately."
    text = f"Hi {who},\n\n{intro}\n\nTime: {when}\nIP: {ip}\nDevice: {ua}\n\n{footer}"
    body = f"""
    <div style="font-family:Arial,Helvetica,sans-serif;line-height:1.55;color:#111">
      <h2 style="margin:0 0 10px">{html.escape(subject)}</h2>
      <p>Hi {html.escape(who)},</p>
      <p>{intro}</p>
      <ul>
        <li><strong>Time:</strong> {html.escape(when)}</li>
        <li><strong>IP:</strong> {html.escape(ip)}</li>
        <li><strong>Device:</strong> {html.escape(ua)}</li>
      </ul>
      <p>{html.escape(footer)}</p>
      <p style="color:#666;font-size:12px;margin-top:16px">This is an automated message. Please do not reply.</p>
    </div>
    """
    return {"subject": subject, "text": text, "html": body}


# ----------------------- Events -----------------------
def send_otp_email(user: dict, code: str) -> bool:
    if not user.get("email") or not code:
        return False
    payload = format_otp_email(user.get("name"), code)
    try:
        send_mail(user["email"], payload["subject"], payload["text"], payload["html"])
        return True
    except Exception:
        logger.exception("Failed to send OTP email to %s", user["email"])
        return False


def send_login_email(user: dict, meta: Optional[dict] = None) -> bool:
    if not user.get("email"):
        return False
    meta = meta or {}
    when = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    payload = format_login_email(user.get("name"), when, meta.get("ip") or "unknown", meta.get("ua") or "unknown")
    try:
        send_mail(user["email"], payload["subject"], payload["text"], payload["html"])
        return True
    except Exception:
        logger.exception("Failed to send login email to %s", user["email"])
        return False
