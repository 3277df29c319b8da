"""Templated roster emails and the providers that deliver them."""

from __future__ import annotations

import logging
import os
import smtplib
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from email.utils import make_msgid
from pathlib import Path
from typing import Any, Iterable, Sequence
from urllib.parse import urlencode

import httpx
from fastapi.concurrency import run_in_threadpool
from fastapi.templating import Jinja2Templates
from markupsafe import Markup, escape

from .roster import Role, SessionConfig

BASE_DIR = Path(__file__).resolve().parent

FROM_EMAIL = os.getenv("FROM_EMAIL")
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL")
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT_RAW = os.getenv("SMTP_PORT")
SMTP_PORT = int(SMTP_PORT_RAW) if SMTP_PORT_RAW and SMTP_PORT_RAW.isdigit() else None
SMTP_USERNAME = os.getenv("SMTP_USERNAME")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() in {"1", "true", "yes"}
SMTP_USE_SSL = os.getenv("SMTP_USE_SSL", "false").lower() in {"1", "true", "yes"}

BATCH_SIZE = 100
REGISTRATION_SUBJECT = "Welcome to SkateApp - Registration Confirmed!"

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
logger = logging.getLogger(__name__)


class MailerError(RuntimeError):
    """The email provider rejected a request or could not be reached."""


@dataclass(frozen=True)
class OutboundEmail:
    sender: str
    to: str
    subject: str
    html: str

    def as_payload(self) -> dict[str, str]:
        return {"from": self.sender, "to": self.to, "subject": self.subject, "html": self.html}


@dataclass
class AnnouncementReport:
    total_recipients: int
    total_sent: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "totalRecipients": self.total_recipients,
            "totalSent": self.total_sent,
        }
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


def format_session_date(value: str) -> str:
    """Render ``2025-11-15`` as ``Saturday, November 15, 2025``."""
    try:
        day = datetime.strptime(value, "%Y-%m-%d")
    except (TypeError, ValueError):
        return value
    return f"{day:%A}, {day:%B} {day.day}, {day.year}"


def format_session_time(value: str) -> str:
    """Render ``19:30`` as ``7:30 PM``."""
    try:
        hour_text, minute = value.split(":")
        hour = int(hour_text)
    except (AttributeError, ValueError):
        return value
    suffix = "PM" if hour >= 12 else "AM"
    display = hour - 12 if hour > 12 else 12 if hour == 0 else hour
    return f"{display}:{minute} {suffix}"


def format_invite_message(message: str) -> Markup:
    return Markup("<br>").join(escape(line) for line in message.splitlines())


def rsvp_link(email: str, session: SessionConfig, base_url: str | None = None) -> str | None:
    base_url = base_url if base_url is not None else PUBLIC_BASE_URL
    if not base_url:
        return None
    query = urlencode(
        {"email": email, "date": session.date, "time": session.time, "location": session.location}
    )
    return f"{base_url.rstrip('/')}/#/rsvp?{query}"


def build_registration_email(name: str, position: str, role: str) -> str:
    role_label = "Substitute" if role == Role.SUB.value else "Regular"
    return templates.get_template("email/registration.html").render(
        name=name,
        position=position,
        role_label=role_label,
    )


def build_announcement_email(
    player_name: str,
    session: SessionConfig,
    *,
    rsvp_url: str | None = None,
) -> str:
    session_date = format_session_date(session.date)
    details = [
        ("Date", session_date),
        ("Time", format_session_time(session.time)),
        ("Location", session.location),
        ("Max Spots", session.max_players),
        ("Goalie Spots", session.max_goalies),
    ]
    return templates.get_template("email/announcement.html").render(
        player_name=player_name,
        session_date=session_date,
        details=details,
        invite_message=format_invite_message(session.invite_message) if session.invite_message else "",
        rsvp_url=rsvp_url,
    )


def announcement_subject(session_date: str) -> str:
    return f"Sk8 This Week - {session_date}"


class Mailer:
    """Transactional email provider."""

    sender: str

    async def send(self, message: OutboundEmail) -> str:
        raise NotImplementedError

    async def send_batch(self, messages: Sequence[OutboundEmail]) -> list[str]:
        raise NotImplementedError


class ResendMailer(Mailer):
    """Deliver through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        sender: str,
        *,
        api_url: str = RESEND_API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 15.0,
    ):
        self.api_key = api_key
        self.sender = sender
        self.api_url = api_url
        self._transport = transport
        self._timeout = timeout

    async def _post(self, path: str, payload: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                transport=self._transport,
                timeout=self._timeout,
            ) as client:
                response = await client.post(path, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            raise MailerError(
                f"Resend returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise MailerError(f"Resend request failed: {exc}") from exc
        if not isinstance(data, dict):
            raise MailerError("Resend returned an unexpected response body")
        return data

    async def send(self, message: OutboundEmail) -> str:
        data = await self._post("/emails", message.as_payload())
        return str(data.get("id", ""))

    async def send_batch(self, messages: Sequence[OutboundEmail]) -> list[str]:
        data = await self._post("/emails/batch", [message.as_payload() for message in messages])
        return [str(item.get("id", "")) for item in data.get("data", [])]


class SmtpMailer(Mailer):
    """Deliver over SMTP; the blocking work runs in the threadpool."""

    def __init__(
        self,
        host: str,
        sender: str,
        *,
        port: int | None = None,
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        use_ssl: bool = False,
    ):
        self.host = host
        self.sender = sender
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.use_ssl = use_ssl

    def _to_message(self, outbound: OutboundEmail) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = outbound.subject
        message["From"] = outbound.sender
        message["To"] = outbound.to
        message["Message-ID"] = make_msgid(domain=outbound.sender.rpartition("@")[2] or None)
        message.set_content("This message is best viewed in an HTML-capable email client.")
        message.add_alternative(outbound.html, subtype="html")
        return message

    def _deliver(self, messages: Iterable[OutboundEmail]) -> list[str]:
        prepared = [self._to_message(outbound) for outbound in messages]
        try:
            if self.use_ssl:
                server = smtplib.SMTP_SSL(self.host, self.port or 465)
            else:
                server = smtplib.SMTP(self.host, self.port or 587)
            with server:
                if self.use_tls and not self.use_ssl:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                for message in prepared:
                    server.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise MailerError(f"SMTP delivery failed: {exc}") from exc
        return [str(message["Message-ID"]) for message in prepared]

    async def send(self, message: OutboundEmail) -> str:
        ids = await run_in_threadpool(self._deliver, [message])
        return ids[0]

    async def send_batch(self, messages: Sequence[OutboundEmail]) -> list[str]:
        return await run_in_threadpool(self._deliver, list(messages))


def mailer_from_env() -> Mailer | None:
    """Pick a provider from the environment, or ``None`` when email is not configured."""
    if not FROM_EMAIL:
        return None
    if RESEND_API_KEY:
        return ResendMailer(RESEND_API_KEY, FROM_EMAIL)
    if SMTP_HOST:
        return SmtpMailer(
            SMTP_HOST,
            FROM_EMAIL,
            port=SMTP_PORT,
            username=SMTP_USERNAME,
            password=SMTP_PASSWORD,
            use_tls=SMTP_USE_TLS,
            use_ssl=SMTP_USE_SSL,
        )
    return None


def build_announcement_messages(
    sender: str,
    recipients: Iterable[dict[str, str]],
    session: SessionConfig,
    *,
    base_url: str | None = None,
) -> list[OutboundEmail]:
    subject = announcement_subject(session.date)
    return [
        OutboundEmail(
            sender=sender,
            to=recipient["email"],
            subject=subject,
            html=build_announcement_email(
                recipient.get("name") or recipient["email"],
                session,
                rsvp_url=rsvp_link(recipient["email"], session, base_url),
            ),
        )
        for recipient in recipients
    ]


async def send_in_batches(
    mailer: Mailer,
    messages: Sequence[OutboundEmail],
    *,
    batch_size: int = BATCH_SIZE,
) -> AnnouncementReport:
    """Send sequential batches; a failed batch is recorded and the run continues."""
    report = AnnouncementReport(total_recipients=len(messages))
    for start in range(0, len(messages), batch_size):
        batch = messages[start : start + batch_size]
        number = start // batch_size + 1
        try:
            ids = await mailer.send_batch(batch)
        except MailerError as exc:
            logger.error("Batch %s failed: %s", number, exc)
            report.errors.append(f"Batch {number}: {exc}")
            continue
        report.total_sent += len(batch)
        logger.info("Batch %s sent (%s emails, %s ids)", number, len(batch), len(ids))
    logger.info("Weekly announcement complete: %s/%s sent", report.total_sent, report.total_recipients)
    return report
