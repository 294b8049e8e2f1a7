"""Certificate generation saga.

A template without QR elements is rendered and stored once.  A template with
QR elements needs the certificate's own public URL inside the image, so the
record id is chosen up front and the artifact goes through two passes: a
placeholder render is stored, the final render embedding the view URL
overwrites it in place, and only then is the record persisted.  If any
step after the placeholder render fails the placeholder is stored instead
and the record is flagged ``has_qr=False``.  Badges run through the same
passes with the badge image URL as the QR payload.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from .. import emailer
from ..app import db, get_object_store
from ..models import (
    Certificate,
    CertificateTemplate,
    EmailTemplate,
    Event,
    Registration,
)
from ..shared.certificates_layout import Template, template_from_model
from ..shared.errors import NotFoundError, ValidationError
from ..shared.fields import RegistrationFieldResolver, substitute_placeholders
from ..shared.mail_utils import looks_like_html, wrap_plain_body
from ..shared.storage import FileSystemObjectStore
from ..shared.time import coerce_date, fmt_date_range
from .documents import combine_images_to_pdf
from .renderer import BackgroundCache, render_certificate_image


@dataclass(frozen=True)
class ParticipantFailure:
    registration_id: int
    participant_name: str
    error: str

    def to_dict(self) -> dict:
        return {
            "registration_id": self.registration_id,
            "participant_name": self.participant_name,
            "error": self.error,
        }


@dataclass
class BatchResult:
    total: int
    generated: list[Certificate] = field(default_factory=list)
    failures: list[ParticipantFailure] = field(default_factory=list)
    skipped: list[ParticipantFailure] = field(default_factory=list)
    emailed: dict[int, bool] = field(default_factory=dict)
    images: list[bytes] = field(default_factory=list)
    document: bytes = b""

    @property
    def summary(self) -> str:
        return f"{len(self.generated)} of {self.total} succeeded"

    def to_dict(self) -> dict:
        return {
            "ok": not self.failures,
            "summary": self.summary,
            "total": self.total,
            "generated": [
                {
                    "id": cert.id,
                    "registration_id": cert.registration_id,
                    "recipient_name": cert.recipient_name,
                    "artifact_url": cert.artifact_url,
                    "public_view_url": cert.public_view_url,
                    "has_qr": cert.has_qr,
                    "emailed": self.emailed.get(cert.registration_id),
                }
                for cert in self.generated
            ],
            "failures": [failure.to_dict() for failure in self.failures],
            "skipped": [failure.to_dict() for failure in self.skipped],
        }


@dataclass
class GenerationContext:
    """Everything one generation run needs; owns the run's caches."""

    owner_id: int
    event: Event
    template: Template
    store: FileSystemObjectStore
    public_base_url: str
    backgrounds: BackgroundCache = field(default_factory=BackgroundCache)
    render: Callable[..., bytes] | None = None
    folder: str = "certificates"

    def artifact_path(self, artifact_id: str) -> str:
        return f"{self.owner_id}/{self.folder}/{artifact_id}.png"

    def public_view_url(self, certificate_id: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/certificate/{certificate_id}"


@dataclass(frozen=True)
class Artifact:
    url: str
    image: bytes
    has_qr: bool


class CertificateGenerator:
    def __init__(self, context: GenerationContext):
        self.context = context

    def _render(self, resolver: RegistrationFieldResolver, qr_payload: str | None) -> bytes:
        render = self.context.render or render_certificate_image
        return render(
            self.context.template,
            resolver,
            qr_payload,
            background_loader=self.context.backgrounds,
        )

    def _single_phase(self, artifact_id: str, resolver) -> Artifact:
        image = self._render(resolver, None)
        url = self.context.store.put(self.context.artifact_path(artifact_id), image)
        return Artifact(url=url, image=image, has_qr=False)

    def _two_phase(self, artifact_id: str, resolver, qr_payload: str) -> Artifact:
        ctx = self.context
        placeholder = self._render(resolver, None)
        path = ctx.artifact_path(artifact_id)
        try:
            url = ctx.store.put(path, placeholder, overwrite=False)
            final = self._render(resolver, qr_payload)
            ctx.store.put(path, final, overwrite=True)
            return Artifact(url=url, image=final, has_qr=True)
        except Exception as exc:
            current_app.logger.warning(
                "[CERT-QR-FALLBACK] artifact=%s event=%s error=%s",
                path,
                ctx.event.id,
                exc,
            )
        url = ctx.store.put(path, placeholder, overwrite=True)
        return Artifact(url=url, image=placeholder, has_qr=False)

    def render_artifact(self, artifact_id: str, resolver, qr_payload: str) -> Artifact:
        """Render and store one artifact, embedding qr_payload when the template asks."""
        if self.context.template.has_qr:
            return self._two_phase(artifact_id, resolver, qr_payload)
        return self._single_phase(artifact_id, resolver)

    def generate_one(self, registration: Registration, result: BatchResult) -> Certificate | None:
        """Run the saga for one participant, recording any failure in result."""

        ctx = self.context
        resolver = RegistrationFieldResolver.for_registration(registration)
        name = resolver.participant_name
        certificate_id = str(uuid.uuid4())
        try:
            artifact = self.render_artifact(
                certificate_id, resolver, ctx.public_view_url(certificate_id)
            )
        except Exception as exc:
            current_app.logger.exception(
                "[CERT-FAIL] registration=%s event=%s", registration.id, ctx.event.id
            )
            result.failures.append(ParticipantFailure(registration.id, name, str(exc)))
            return None

        result.images.append(artifact.image)
        cert = Certificate(
            id=certificate_id,
            owner_id=ctx.owner_id,
            event_id=ctx.event.id,
            template_id=ctx.template.id,
            registration_id=registration.id,
            artifact_url=artifact.url,
            public_view_url=ctx.public_view_url(certificate_id),
            recipient_name=name,
            recipient_email=resolver.email or None,
            has_qr=artifact.has_qr,
        )
        db.session.add(cert)
        try:
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception(
                "[CERT-FAIL] persist registration=%s event=%s", registration.id, ctx.event.id
            )
            result.failures.append(ParticipantFailure(registration.id, name, str(exc)))
            return None
        current_app.logger.info(
            "[CERT] generated certificate=%s registration=%s has_qr=%s",
            certificate_id,
            registration.id,
            artifact.has_qr,
        )
        result.generated.append(cert)
        return cert

    def run(
        self,
        registrations: Sequence[Registration],
        on_generated: Callable[[Registration, Certificate], None] | None = None,
        result: BatchResult | None = None,
    ) -> BatchResult:
        if result is None:
            result = BatchResult(total=len(registrations))
        for registration in registrations:
            cert = self.generate_one(registration, result)
            if cert is not None and on_generated is not None:
                on_generated(registration, cert)
        result.document = combine_images_to_pdf(
            result.images, self.context.template.width, self.context.template.height
        )
        current_app.logger.info(
            "[CERT] batch event=%s %s", self.context.event.id, result.summary
        )
        return result


def load_generation_context(
    owner_id: int | None,
    event_id: int | None,
    template_id: int | None,
    *,
    store: FileSystemObjectStore | None = None,
    public_base_url: str | None = None,
) -> GenerationContext:
    if not owner_id:
        raise ValidationError("An organizer is required to generate certificates.")
    if not event_id:
        raise ValidationError("Select an event.")
    if not template_id:
        raise ValidationError("Select a certificate template.")
    try:
        event_id, template_id = int(event_id), int(template_id)
    except (TypeError, ValueError):
        raise ValidationError("event_id and template_id must be integers.") from None
    event = db.session.get(Event, event_id)
    if not event or event.owner_id != owner_id:
        raise NotFoundError("Event not found.")
    template_row = db.session.get(CertificateTemplate, template_id)
    if not template_row or template_row.owner_id != owner_id:
        raise NotFoundError("Certificate template not found.")
    return GenerationContext(
        owner_id=owner_id,
        event=event,
        template=template_from_model(template_row),
        store=store or get_object_store(),
        public_base_url=public_base_url or current_app.config["PUBLIC_BASE_URL"],
    )


def select_participants(
    event: Event, registration_ids: Iterable[int]
) -> tuple[list[Registration], list[ParticipantFailure]]:
    """Load accepted registrations in request order; unknown ids become failures."""

    ids: list[int] = []
    for raw in registration_ids or []:
        try:
            rid = int(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid registration id {raw!r}.") from None
        if rid not in ids:
            ids.append(rid)
    if not ids:
        raise ValidationError("Select at least one participant.")
    rows = Registration.query.filter(
        Registration.id.in_(ids),
        Registration.event_id == event.id,
        Registration.status == "accepted",
    ).all()
    by_id = {row.id: row for row in rows}
    selected = [by_id[rid] for rid in ids if rid in by_id]
    missing = [
        ParticipantFailure(rid, "", "Registration is not part of this event.")
        for rid in ids
        if rid not in by_id
    ]
    return selected, missing


def generate_certificates(
    owner_id: int | None,
    event_id: int | None,
    template_id: int | None,
    registration_ids: Iterable[int],
    *,
    store: FileSystemObjectStore | None = None,
    render: Callable[..., bytes] | None = None,
) -> BatchResult:
    """Generate one certificate per selected participant, sequentially."""

    context = load_generation_context(owner_id, event_id, template_id, store=store)
    context.render = render
    registrations, missing = select_participants(context.event, registration_ids)
    result = BatchResult(total=len(registrations) + len(missing), failures=list(missing))
    return CertificateGenerator(context).run(registrations, result=result)


def _event_date_text(event: Event) -> str:
    ranges = [entry for entry in (event.dates or []) if isinstance(entry, dict)]
    if not ranges:
        return ""
    first = ranges[0]
    start = coerce_date(first.get("start"))
    end = coerce_date(ranges[-1].get("end") or ranges[-1].get("start"))
    return fmt_date_range(start, end)


def build_certificate_email(
    email_template: EmailTemplate,
    registration: Registration,
    event: Event,
    certificate_url: str,
) -> tuple[str, str, str]:
    """Return (subject, text body, html body) with placeholders filled in."""

    values = RegistrationFieldResolver.for_registration(registration).placeholder_values()
    values.update(
        {
            "event_name": event.name or "",
            "event_date": _event_date_text(event),
            "event_location": event.location or "",
            "certificate_url": certificate_url or "",
        }
    )
    subject = substitute_placeholders(email_template.subject, values)
    body = substitute_placeholders(email_template.body, values)
    html = body if looks_like_html(body) else wrap_plain_body(body, certificate_url)
    return subject, body, html


def send_certificates_by_email(
    owner_id: int | None,
    event_id: int | None,
    template_id: int | None,
    email_template_id: int | None,
    registration_ids: Iterable[int],
    *,
    store: FileSystemObjectStore | None = None,
    render: Callable[..., bytes] | None = None,
    send: Callable[..., dict] | None = None,
) -> BatchResult:
    """Generate certificates and mail each participant a link to theirs.

    Participants without an email address are skipped.  A failed send is
    reported per participant and never removes the stored certificate.
    """

    context = load_generation_context(owner_id, event_id, template_id, store=store)
    context.render = render
    if not email_template_id:
        raise ValidationError("Select an email template.")
    try:
        email_template_id = int(email_template_id)
    except (TypeError, ValueError):
        raise ValidationError("email_template_id must be an integer.") from None
    email_template = db.session.get(EmailTemplate, email_template_id)
    if not email_template or email_template.owner_id != owner_id:
        raise NotFoundError("Email template not found.")
    registrations, missing = select_participants(context.event, registration_ids)

    with_email: list[Registration] = []
    skipped: list[ParticipantFailure] = []
    for registration in registrations:
        resolver = RegistrationFieldResolver.for_registration(registration)
        if resolver.email:
            with_email.append(registration)
        else:
            skipped.append(
                ParticipantFailure(registration.id, resolver.participant_name, "No email address.")
            )
    if not with_email:
        raise ValidationError("None of the selected participants has an email address.")

    send = send or emailer.send
    result = BatchResult(total=len(with_email) + len(missing), failures=list(missing), skipped=skipped)

    def deliver(registration: Registration, cert: Certificate) -> None:
        subject, body, html = build_certificate_email(
            email_template, registration, context.event, cert.artifact_url
        )
        outcome = send(
            cert.recipient_email, subject, body, html=html, to_name=cert.recipient_name
        )
        result.emailed[registration.id] = bool(outcome.get("ok"))
        if not outcome.get("ok"):
            current_app.logger.warning(
                "[CERT-MAIL-FAIL] certificate=%s detail=%s", cert.id, outcome.get("detail")
            )

    return CertificateGenerator(context).run(with_email, on_generated=deliver, result=result)
