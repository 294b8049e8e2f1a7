"""Outbound certificate mail over SMTP.

Settings come from the ``settings`` row first and the ``SMTP_*`` environment
second.  Without a host, port and sender address nothing is sent and the
call reports a stub result instead of raising.
"""

import json
import logging
import os
import smtplib
import sys
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Sequence

from .shared.mail_utils import normalize_recipients

logger = logging.getLogger("certcheck.mailer")
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


@dataclass(frozen=True)
class SmtpConfig:
    host: str | None
    port: int | None
    user: str | None
    password: str | None
    from_addr: str | None
    from_name: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.host and self.port and self.from_addr)

    @property
    def sender(self) -> str:
        return formataddr((self.from_name, self.from_addr)) if self.from_name else self.from_addr


def _setting(settings, attr: str, env: str, default=None):
    value = getattr(settings, attr, None) if settings else None
    return value if value else os.getenv(env, default)


def load_smtp_config() -> SmtpConfig:
    from .models import Settings  # local import to avoid circular import at module load

    settings = Settings.get()
    port = _setting(settings, "smtp_port", "SMTP_PORT")
    password = settings.get_smtp_pass() if settings else None
    return SmtpConfig(
        host=_setting(settings, "smtp_host", "SMTP_HOST"),
        port=int(port) if port else None,
        user=_setting(settings, "smtp_user", "SMTP_USER"),
        password=password or os.getenv("SMTP_PASS"),
        from_addr=_setting(settings, "smtp_from_default", "SMTP_FROM_DEFAULT"),
        from_name=_setting(settings, "smtp_from_name", "SMTP_FROM_NAME", ""),
    )


def _to_header(envelope: list[str], header: str, to_name: str | None) -> str:
    if to_name and len(envelope) == 1:
        return formataddr((to_name, envelope[0]))
    return header


def build_message(
    config: SmtpConfig,
    to_header: str,
    subject: str,
    body: str,
    html: str | None = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    if to_header:
        msg["To"] = to_header
    msg["From"] = config.sender
    msg.set_content(body)
    if html:
        msg.add_alternative(html, subtype="html")
    return msg


def _deliver(config: SmtpConfig, envelope: list[str], msg: EmailMessage) -> None:
    if config.port == 465:
        connection = smtplib.SMTP_SSL(config.host, config.port)
    else:
        connection = smtplib.SMTP(config.host, config.port)
    with connection as server:
        if config.port == 587:
            server.starttls()
        if config.user and config.password:
            server.login(config.user, config.password)
        server.sendmail(config.from_addr, envelope, msg.as_string())


def send(
    recipients: Sequence[str] | str | None,
    subject: str,
    body: str,
    html: str | None = None,
    to_name: str | None = None,
) -> dict:
    """Send one message and report ``{"ok": bool, "detail": str}``."""

    try:
        config = load_smtp_config()
    except ValueError as exc:
        logger.warning("[MAIL-CONFIG] invalid smtp settings: %s", exc)
        return {"ok": False, "detail": f"invalid config: {exc}"}

    envelope, header = normalize_recipients(recipients)
    to_header = _to_header(envelope, header, to_name)
    log_fields = (to_header, json.dumps(envelope), subject, config.host)

    if not config.complete:
        logger.info(
            "[MAIL-OUT] mode=stub to=%s envelope=%s subject=\"%s\" host=%s", *log_fields
        )
        return {"ok": False, "detail": "stub: missing config"}
    if not envelope:
        logger.warning("[MAIL-NO-RECIPIENTS] subject=\"%s\" host=%s", subject, config.host)
        return {"ok": False, "detail": "no valid recipients"}

    try:
        _deliver(config, envelope, build_message(config, to_header, subject, body, html))
    except (OSError, smtplib.SMTPException, ValueError) as exc:
        logger.warning(
            "[MAIL-OUT] mode=real to=%s envelope=%s subject=\"%s\" host=%s result=%s",
            *log_fields,
            exc,
        )
        return {"ok": False, "detail": str(exc)}
    logger.info(
        "[MAIL-OUT] mode=real to=%s envelope=%s subject=\"%s\" host=%s result=sent", *log_fields
    )
    return {"ok": True, "detail": "sent"}
