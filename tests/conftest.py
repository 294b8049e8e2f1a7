import base64
import os
import pathlib
import struct
import sys
import zlib
from io import BytesIO
from types import SimpleNamespace

import pytest
from PIL import Image

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from certcheck.app import create_app, db
from certcheck.models import (
    Badge,
    CertificateTemplate,
    EmailTemplate,
    Event,
    Organizer,
    Registration,
)

PUBLIC_BASE_URL = "https://certs.example.org"


def oversized_png_data_uri(width=20000, height=10000):
    """A tiny PNG whose header claims a decompression-bomb sized canvas."""
    buffer = BytesIO()
    Image.new("RGB", (1, 1), "black").save(buffer, format="PNG")
    data = bytearray(buffer.getvalue())
    # IHDR data starts after the signature and the chunk length and type
    struct.pack_into(">II", data, 16, width, height)
    struct.pack_into(">I", data, 29, zlib.crc32(bytes(data[12:29])))
    return "data:image/png;base64," + base64.b64encode(bytes(data)).decode()


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "slow" in item.keywords or "quarantine" in item.keywords:
            continue
        item.add_marker("full")
        if "no_smoke" in item.keywords:
            continue
        item.add_marker("smoke")


@pytest.fixture
def app(tmp_path):
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    application = create_app(
        {
            "TESTING": True,
            "SITE_ROOT": str(tmp_path),
            "PUBLIC_BASE_URL": PUBLIC_BASE_URL,
        }
    )
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seed(app):
    """Two organizers, a two-day event with four registrations, and templates."""

    organizer = Organizer(email="olive@example.com", full_name="Olive Organizer")
    organizer.set_password("correct horse")
    other = Organizer(email="otto@example.com", full_name="Otto Other")
    other.set_password("battery staple")
    db.session.add_all([organizer, other])
    db.session.flush()

    event = Event(
        owner_id=organizer.id,
        name="Data Summit",
        location="Lisbon",
        dates=[{"start": "2024-06-01", "end": "2024-06-02"}],
    )
    single_day = Event(
        owner_id=organizer.id,
        name="Workshop",
        location="Porto",
        dates=[{"start": "2024-07-10"}],
    )
    undated = Event(owner_id=organizer.id, name="Webinar", dates=[])
    foreign = Event(
        owner_id=other.id,
        name="Other Conf",
        dates=[{"start": "2024-06-01"}],
    )
    db.session.add_all([event, single_day, undated, foreign])
    db.session.flush()

    ada = Registration(
        owner_id=organizer.id,
        event_id=event.id,
        status="accepted",
        general_info={"name": "Ada Lovelace", "email": "ada@example.com", "organization": "Analytical"},
        answers={"track": "ML"},
    )
    grace = Registration(
        owner_id=organizer.id,
        event_id=event.id,
        status="accepted",
        general_info={"email": "grace@example.com"},
        answers={"general_name": "Grace Hopper", "track": "Compilers"},
    )
    alan = Registration(
        owner_id=organizer.id,
        event_id=event.id,
        status="accepted",
        submitted_by="Alan Turing",
        general_info={},
        answers={},
    )
    pending = Registration(
        owner_id=organizer.id,
        event_id=event.id,
        status="pending",
        general_info={"name": "Pat Pending", "email": "pat@example.com"},
        answers={},
    )
    single_reg = Registration(
        owner_id=organizer.id,
        event_id=single_day.id,
        status="accepted",
        general_info={"name": "Sam Single", "email": "sam@example.com"},
        answers={},
    )
    undated_reg = Registration(
        owner_id=organizer.id,
        event_id=undated.id,
        status="accepted",
        general_info={"name": "Una Undated"},
        answers={},
    )
    foreign_reg = Registration(
        owner_id=other.id,
        event_id=foreign.id,
        status="accepted",
        general_info={"name": "Fay Foreign", "email": "fay@example.com"},
        answers={},
    )
    db.session.add_all([ada, grace, alan, pending, single_reg, undated_reg, foreign_reg])
    db.session.flush()

    plain_template = CertificateTemplate(
        owner_id=organizer.id,
        title="Plain",
        width=400,
        height=300,
        elements=[
            {"type": "text", "x": 50, "y": 20, "font_size": 20, "content": "Certificate"},
            {"type": "field", "x": 50, "y": 50, "font_size": 16, "content": "name"},
        ],
    )
    qr_template = CertificateTemplate(
        owner_id=organizer.id,
        title="With QR",
        width=400,
        height=300,
        elements=[
            {"type": "field", "x": 50, "y": 15, "font_size": 16, "content": "name"},
            {"type": "qr", "x": 50, "y": 60, "font_size": 150, "content": ""},
        ],
    )
    email_template = EmailTemplate(
        owner_id=organizer.id,
        name="Thanks",
        subject="Your {{event_name}} certificate, {{name}}",
        body="Hi {{name}},\n\nThanks for joining {{event_name}} in {{event_location}} ({{track}}).{{missing}}",
    )
    db.session.add_all([plain_template, qr_template, email_template])
    db.session.flush()

    badge = Badge(
        owner_id=organizer.id,
        event_id=event.id,
        registration_id=ada.id,
        image_url=f"{PUBLIC_BASE_URL}/media/{organizer.id}/badges/ada.png",
        participant_name="Ada Lovelace",
    )
    foreign_badge = Badge(
        owner_id=other.id,
        event_id=foreign.id,
        registration_id=foreign_reg.id,
        image_url=f"{PUBLIC_BASE_URL}/media/{other.id}/badges/fay.png",
        participant_name="Fay Foreign",
    )
    db.session.add_all([badge, foreign_badge])
    db.session.commit()

    return SimpleNamespace(
        organizer_id=organizer.id,
        other_id=other.id,
        event_id=event.id,
        single_day_event_id=single_day.id,
        undated_event_id=undated.id,
        foreign_event_id=foreign.id,
        ada_id=ada.id,
        grace_id=grace.id,
        alan_id=alan.id,
        pending_id=pending.id,
        single_reg_id=single_reg.id,
        undated_reg_id=undated_reg.id,
        foreign_reg_id=foreign_reg.id,
        registration_ids=[ada.id, grace.id, alan.id],
        plain_template_id=plain_template.id,
        qr_template_id=qr_template.id,
        email_template_id=email_template.id,
        badge_url=badge.image_url,
        foreign_badge_url=foreign_badge.image_url,
    )
