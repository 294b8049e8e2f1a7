from __future__ import annotations

import base64
import uuid

from flask import current_app
from sqlalchemy.orm import validates

from .app import db
from .shared.passwords import hash_password, verify_password
from .shared.time import now_utc

COLLECTIVE_DAY_BUCKET = "__all__"
COLLECTIVE_DAY_LABEL = "All Days"

CHECKIN_DONE = "done"
CHECKIN_UNDONE = "undone"
CHECKIN_STATUSES = (CHECKIN_DONE, CHECKIN_UNDONE)

REGISTRATION_STATUSES = ("pending", "accepted", "rejected")


def _new_uuid() -> str:
    return str(uuid.uuid4())


class Organizer(db.Model):
    __tablename__ = "organizers"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    password_hash = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.Index("ix_organizers_email_lower", db.func.lower(email), unique=True),
    )

    @validates("email")
    def _normalize_email(self, key, value):
        return (value or "").strip().lower()

    def set_password(self, plain: str) -> None:
        self.password_hash = hash_password(plain)

    def check_password(self, plain: str) -> bool:
        return verify_password(plain, self.password_hash)


class Settings(db.Model):
    __tablename__ = "settings"
    id = db.Column(db.Integer, primary_key=True, default=1)
    smtp_host = db.Column(db.String(255))
    smtp_port = db.Column(db.Integer)
    smtp_user = db.Column(db.String(255))
    smtp_from_default = db.Column(db.String(255))
    smtp_from_name = db.Column(db.String(255))
    smtp_pass_enc = db.Column(db.Text)
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )

    # always enforce singleton row id=1
    @staticmethod
    def get() -> "Settings | None":
        return db.session.get(Settings, 1)

    def set_smtp_pass(self, plain: str) -> None:
        if not plain:
            self.smtp_pass_enc = None
            return
        key = current_app.config.get("SECRET_KEY", "").encode()
        data = plain.encode()
        xored = bytes([b ^ key[i % len(key)] for i, b in enumerate(data)])
        self.smtp_pass_enc = base64.b64encode(xored).decode()

    def get_smtp_pass(self) -> str | None:
        if not self.smtp_pass_enc:
            return None
        try:
            key = current_app.config.get("SECRET_KEY", "").encode()
            raw = base64.b64decode(self.smtp_pass_enc.encode())
            data = bytes([b ^ key[i % len(key)] for i, b in enumerate(raw)])
            return data.decode()
        except (ValueError, UnicodeDecodeError):
            return None


class Event(db.Model):
    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(255), nullable=False)
    location = db.Column(db.String(255))
    # [{"start": "2024-06-01", "end": "2024-06-02"}, ...]
    dates = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    owner = db.relationship("Organizer")


class Registration(db.Model):
    __tablename__ = "registrations"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False
    )
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    status = db.Column(db.String(16), nullable=False, default="accepted")
    submitted_by = db.Column(db.String(255))
    general_info = db.Column(db.JSON, nullable=False, default=dict)
    answers = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (db.Index("ix_registrations_event_status", "event_id", "status"),)

    event = db.relationship("Event")

    @validates("status")
    def _validate_status(self, key, value):
        if value not in REGISTRATION_STATUSES:
            raise ValueError(f"invalid registration status {value!r}")
        return value


class CertificateTemplate(db.Model):
    __tablename__ = "certificate_templates"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False
    )
    title = db.Column(db.String(255), nullable=False, default="Certificate")
    width = db.Column(db.Integer, nullable=False, default=1123)
    height = db.Column(db.Integer, nullable=False, default=794)
    background_image = db.Column(db.Text)
    elements = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )


class EmailTemplate(db.Model):
    __tablename__ = "email_templates"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False
    )
    name = db.Column(db.String(255), nullable=False)
    subject = db.Column(db.String(500), nullable=False, default="")
    body = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, server_default=db.func.now())


class Certificate(db.Model):
    __tablename__ = "certificates"

    id = db.Column(db.String(36), primary_key=True, default=_new_uuid)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False
    )
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("certificate_templates.id", ondelete="SET NULL")
    )
    registration_id = db.Column(
        db.Integer, db.ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False
    )
    artifact_url = db.Column(db.String(1024), nullable=False)
    public_view_url = db.Column(db.String(1024), nullable=False)
    recipient_name = db.Column(db.String(255), nullable=False)
    recipient_email = db.Column(db.String(255))
    has_qr = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.Index("ix_certificates_artifact_url", "artifact_url"),
        db.Index("ix_certificates_event_registration", "event_id", "registration_id"),
    )

    event = db.relationship("Event")
    registration = db.relationship("Registration")


class Badge(db.Model):
    __tablename__ = "badges"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False
    )
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    registration_id = db.Column(
        db.Integer, db.ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("certificate_templates.id", ondelete="SET NULL")
    )
    image_url = db.Column(db.String(1024), nullable=False, unique=True)
    participant_name = db.Column(db.String(255))
    participant_email = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    has_qr = db.Column(db.Boolean, nullable=False, default=False)
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )
    __table_args__ = (db.UniqueConstraint("registration_id", name="uq_badges_registration"),)

    event = db.relationship("Event")


class CheckinRecord(db.Model):
    __tablename__ = "checkin_records"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("organizers.id", ondelete="CASCADE"), nullable=False
    )
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    registration_id = db.Column(
        db.Integer, db.ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False
    )
    # NULL means the collective (all days) check-in
    day_key = db.Column(db.String(32))
    day_bucket = db.Column(db.String(32), nullable=False)
    day_label = db.Column(db.String(64))
    status = db.Column(db.String(8), nullable=False, default=CHECKIN_UNDONE)
    checked_in_at = db.Column(db.DateTime(timezone=True))
    checked_in_by = db.Column(
        db.Integer, db.ForeignKey("organizers.id", ondelete="SET NULL")
    )
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=now_utc)
    __table_args__ = (
        db.UniqueConstraint(
            "registration_id", "day_bucket", name="uq_checkin_registration_day"
        ),
        db.Index("ix_checkin_records_event", "event_id"),
    )

    @staticmethod
    def bucket_for(day_key: str | None) -> str:
        return day_key if day_key else COLLECTIVE_DAY_BUCKET

    @property
    def is_done(self) -> bool:
        return self.status == CHECKIN_DONE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "registration_id": self.registration_id,
            "day_key": self.day_key,
            "day_label": self.day_label,
            "status": self.status,
            "checked_in_at": self.checked_in_at.isoformat() if self.checked_in_at else None,
            "checked_in_by": self.checked_in_by,
            "notes": self.notes,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
