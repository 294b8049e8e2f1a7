"""Mail helper utilities."""

from __future__ import annotations

import html
import logging
import re
from collections.abc import Iterable, Sequence

logger = logging.getLogger("certcheck.mailer")

_SPLIT_RE = re.compile(r"[;,]")


def _iter_tokens(recipients: Sequence[str] | str | None) -> Iterable[str]:
    if recipients is None:
        return []
    if isinstance(recipients, str):
        return (part for part in _SPLIT_RE.split(recipients))
    return (str(value) for value in recipients)


def normalize_recipients(recipients: Sequence[str] | str | None) -> tuple[list[str], str]:
    """Normalize recipient entries for SMTP envelopes and headers."""

    seen: set[str] = set()
    kept: list[str] = []

    for raw in _iter_tokens(recipients):
        candidate = (raw or "").strip()
        if not candidate:
            continue
        normalized = candidate.lower()
        if "@" not in normalized or "." not in normalized.split("@")[-1]:
            logger.warning("[MAIL-INVALID-RECIPIENT] token=%s", candidate)
            continue
        if normalized in seen:
            continue
        seen.add(normalized)
        kept.append(candidate)

    header = ", ".join(kept)
    return kept, header


def looks_like_html(body: str) -> bool:
    return "<" in (body or "")


def wrap_plain_body(body: str, certificate_url: str | None) -> str:
    """Wrap a plain-text body in a minimal HTML shell with a certificate link."""

    text = "<br>".join(html.escape(line) for line in (body or "").split("\n"))
    link = ""
    if certificate_url:
        link = (
            '<div style="margin-top:20px;text-align:center">'
            '<p style="color:#6b7280;font-size:14px;margin-bottom:10px">Your certificate:</p>'
            f'<a href="{html.escape(certificate_url, quote=True)}" '
            'style="display:inline-block;padding:12px 24px;'
            "background-color:#4f46e5;color:#ffffff;text-decoration:none;"
            'border-radius:6px;font-weight:600">View Certificate</a></div>'
        )
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
        '<body style="margin:0;padding:20px;background-color:#f9fafb">'
        '<div style="max-width:600px;margin:0 auto;background-color:#ffffff;padding:30px">'
        f'<div style="font-family:Arial,sans-serif;line-height:1.6;color:#333">{text}</div>'
        f"{link}"
        '<hr style="border:none;border-top:1px solid #e5e7eb;margin:30px 0">'
        '<p style="color:#9ca3af;font-size:12px;margin:0">'
        "This is an automated email. Please do not reply.</p>"
        "</div></body></html>"
    )
