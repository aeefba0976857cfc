"""Outbound messaging channels: Twilio SMS / WhatsApp and SMTP email."""
from __future__ import annotations

import re
import smtplib
from abc import ABC, abstractmethod
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

import requests

from autopilot.errors import ExternalServiceError
from autopilot.log import get_logger
from autopilot.retry import is_client_error, retry

log = get_logger(__name__)

TWILIO_API = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
TWILIO_MAX_BODY = 1600


class ChannelError(ExternalServiceError):
    code = "CHANNEL_ERROR"


class MessagingChannel(ABC):
    name: str = "channel"

    @abstractmethod
    def send_message(self, to: str, body: str, subject: str | None = None) -> str:
        """Deliver one message; returns the provider's message id."""


class _TwilioChannel(MessagingChannel):
    def __init__(self, account_sid: str, auth_token: str, from_number: str, timeout: float = 15.0) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout

    def _address(self, number: str) -> str:
        return number

    @retry(
        max_attempts=3,
        base_delay=2.0,
        retryable=(requests.RequestException, OSError),
        give_up=is_client_error,
    )
    def _post(self, data: dict) -> dict:
        r = requests.post(
            TWILIO_API.format(sid=self.account_sid),
            data=data,
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
        )
        r.raise_for_status()
        return r.json()

    def send_message(self, to: str, body: str, subject: str | None = None) -> str:
        text = f"{subject}\n{body}" if subject else body
        data = {
            "From": self._address(self.from_number),
            "To": self._address(to),
            "Body": text[:TWILIO_MAX_BODY],
        }
        try:
            sid = self._post(data).get("sid", "")
        except (requests.RequestException, OSError, ValueError) as exc:
            raise ChannelError(f"{self.name} send to {to} failed: {exc}")
        log.info("%s message %s sent to %s", self.name, sid, to)
        return sid


class TwilioSmsChannel(_TwilioChannel):
    name = "sms"


class TwilioWhatsAppChannel(_TwilioChannel):
    name = "whatsapp"

    def _address(self, number: str) -> str:
        return number if number.startswith("whatsapp:") else f"whatsapp:{number}"

    def send_message(self, to: str, body: str, subject: str | None = None) -> str:
        # WhatsApp renders *text* as bold.
        return super().send_message(to, body, f"*{subject}*" if subject else None)


def md_to_html(md: str) -> str:
    """Lightweight markdown-to-HTML for email bodies."""
    parts: list[str] = []
    for line in md.split("\n"):
        stripped = line.strip()
        if not stripped:
            parts.append("<br>")
        elif stripped.startswith("## "):
            parts.append(f'<h2 style="margin:18px 0 6px;color:#2c3e50">{_inline(stripped[3:])}</h2>')
        elif stripped.startswith("# "):
            parts.append(f'<h1 style="margin:0 0 8px;color:#2c3e50">{_inline(stripped[2:])}</h1>')
        elif stripped == "---":
            parts.append('<hr style="border:none;border-top:1px solid #e0e0e0;margin:16px 0">')
        elif stripped.startswith("- "):
            parts.append(f'<div style="margin:2px 0 2px 16px">• {_inline(stripped[2:])}</div>')
        else:
            parts.append(f"<p style='margin:4px 0'>{_inline(stripped)}</p>")
    return "\n".join(parts)


def _inline(text: str) -> str:
    text = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", text)
    text = re.sub(r"\[([^\]]+)\]\(([^)]+)\)", r'<a href="\2" style="color:#1a73e8">\1</a>', text)
    return text


class SmtpEmailChannel(MessagingChannel):
    name = "email"

    def __init__(self, host: str, port: int, user: str, password: str, from_addr: str) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr or user

    @retry(max_attempts=3, base_delay=3.0, retryable=(smtplib.SMTPException, OSError))
    def _smtp_send(self, to_addr: str, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            server.starttls()
            server.login(self.user, self.password)
            server.sendmail(self.from_addr, [to_addr], msg.as_string())

    def send_message(self, to: str, body: str, subject: str | None = None) -> str:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject or "Job search update"
        msg["From"] = self.from_addr
        msg["To"] = to
        msg["Message-ID"] = make_msgid()
        msg.attach(MIMEText(body, "plain", "utf-8"))
        html_body = (
            '<div style="font-family:-apple-system,BlinkMacSystemFont,\'Segoe UI\',Roboto,sans-serif;'
            f'max-width:900px;margin:0 auto;padding:16px;color:#333">\n{md_to_html(body)}\n</div>'
        )
        msg.attach(MIMEText(html_body, "html", "utf-8"))
        try:
            self._smtp_send(to, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelError(f"Email to {to} failed: {exc}")
        log.info("Email sent to %s", to)
        return msg["Message-ID"]


def build_channels(env_getter) -> dict[str, MessagingChannel]:
    """Channels whose credentials are present in the environment."""
    channels: dict[str, MessagingChannel] = {}
    sid, token = env_getter("TWILIO_ACCOUNT_SID"), env_getter("TWILIO_AUTH_TOKEN")
    if sid and token and env_getter("TWILIO_PHONE_NUMBER"):
        channels["sms"] = TwilioSmsChannel(sid, token, env_getter("TWILIO_PHONE_NUMBER"))
    if sid and token and env_getter("TWILIO_WHATSAPP_NUMBER"):
        channels["whatsapp"] = TwilioWhatsAppChannel(sid, token, env_getter("TWILIO_WHATSAPP_NUMBER"))

    host, user, password = env_getter("SMTP_HOST"), env_getter("SMTP_USER"), env_getter("SMTP_PASSWORD")
    if host and user and password:
        try:
            port = int(env_getter("SMTP_PORT", "587") or 587)
        except ValueError:
            port = 587
        channels["email"] = SmtpEmailChannel(host, port, user, password, env_getter("FROM_EMAIL", user))

    log.info("Messaging channels configured: %s", ", ".join(sorted(channels)) or "none")
    return channels
