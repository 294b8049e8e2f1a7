from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable

from flask import current_app
from sqlalchemy import or_

from ..app import db
from ..models import Badge, Certificate, Event, Registration
from ..shared.errors import NotFoundError
from ..shared.fields import DEFAULT_PARTICIPANT_NAME, RegistrationFieldResolver
from ..shared.storage import FileSystemObjectStore
from .certificates import (
    CertificateGenerator,
    ParticipantFailure,
    load_generation_context,
    select_participants,
)


@dataclass(frozen=True)
class BadgeLookup:
    event_id: int
    registration_id: int
    participant_name: str


def _participant_name(registration_id: int, stored: str | None) -> str:
    if stored:
        return stored
    registration = db.session.get(Registration, registration_id)
    if registration is None:
        return DEFAULT_PARTICIPANT_NAME
    return RegistrationFieldResolver.for_registration(registration).participant_name


def resolve_badge(url: str) -> BadgeLookup:
    """Map a scanned artifact URL to the registration it was issued for.

    Badge image URLs are tried first, then certificate view and image URLs.
    """

    url = (url or "").strip()
    badge = Badge.query.filter_by(image_url=url).first()
    if badge:
        return BadgeLookup(
            event_id=badge.event_id,
            registration_id=badge.registration_id,
            participant_name=_participant_name(badge.registration_id, badge.participant_name),
        )
    cert = (
        Certificate.query.filter(
            or_(Certificate.public_view_url == url, Certificate.artifact_url == url)
        )
        .order_by(Certificate.created_at.desc())
        .first()
    )
    if cert:
        return BadgeLookup(
            event_id=cert.event_id,
            registration_id=cert.registration_id,
            participant_name=_participant_name(cert.registration_id, cert.recipient_name),
        )
    raise NotFoundError("No badge found for this QR code.")


def event_name(event_id: int) -> str | None:
    event = db.session.get(Event, event_id)
    return event.name if event else None


@dataclass
class BadgeBatch:
    total: int
    issued: list[Badge] = field(default_factory=list)
    failures: list[ParticipantFailure] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return f"{len(self.issued)} of {self.total} succeeded"

    def to_dict(self) -> dict:
        return {
            "ok": not self.failures,
            "summary": self.summary,
            "total": self.total,
            "badges": [badge_to_dict(badge) for badge in self.issued],
            "failures": [failure.to_dict() for failure in self.failures],
        }


def badge_to_dict(badge: Badge) -> dict:
    return {
        "id": badge.id,
        "registration_id": badge.registration_id,
        "participant_name": badge.participant_name,
        "image_url": badge.image_url,
        "has_qr": badge.has_qr,
    }


def issue_badge(generator: CertificateGenerator, registration: Registration) -> Badge:
    """Render and store a badge whose QR code points at the badge image itself.

    A registration keeps a single badge row; issuing again replaces its image.
    """

    ctx = generator.context
    resolver = RegistrationFieldResolver.for_registration(registration)
    token = str(uuid.uuid4())
    image_url = ctx.store.public_url(ctx.artifact_path(token))
    artifact = generator.render_artifact(token, resolver, image_url)

    badge = Badge.query.filter_by(registration_id=registration.id).one_or_none()
    if badge is None:
        badge = Badge(owner_id=ctx.owner_id, event_id=ctx.event.id, registration_id=registration.id)
        db.session.add(badge)
    badge.template_id = ctx.template.id
    badge.image_url = artifact.url
    badge.has_qr = artifact.has_qr
    badge.participant_name = resolver.participant_name
    badge.participant_email = resolver.email or None
    db.session.commit()
    return badge


def generate_badges(
    owner_id: int | None,
    event_id: int | None,
    template_id: int | None,
    registration_ids: Iterable[int],
    *,
    store: FileSystemObjectStore | None = None,
    render: Callable[..., bytes] | None = None,
) -> BadgeBatch:
    """Issue one badge per selected participant; failures never stop the batch."""

    context = load_generation_context(owner_id, event_id, template_id, store=store)
    context.render = render
    context.folder = "badges"
    registrations, missing = select_participants(context.event, registration_ids)
    batch = BadgeBatch(total=len(registrations) + len(missing), failures=list(missing))
    generator = CertificateGenerator(context)
    for registration in registrations:
        try:
            batch.issued.append(issue_badge(generator, registration))
        except Exception as exc:
            db.session.rollback()
            current_app.logger.exception(
                "[BADGE-FAIL] registration=%s event=%s", registration.id, context.event.id
            )
            name = RegistrationFieldResolver.for_registration(registration).participant_name
            batch.failures.append(ParticipantFailure(registration.id, name, str(exc)))
    current_app.logger.info("[BADGE] batch event=%s %s", context.event.id, batch.summary)
    return batch


def badges_for_event(event: Event) -> list[Badge]:
    return Badge.query.filter_by(event_id=event.id).order_by(Badge.id).all()
