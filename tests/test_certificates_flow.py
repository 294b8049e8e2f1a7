import os
from io import BytesIO

import pytest
from PyPDF2 import PdfReader

from certcheck.app import db, get_object_store
from certcheck.models import (
    Certificate,
    CertificateTemplate,
    EmailTemplate,
    Event,
    Registration,
)
from certcheck.services import certificates as certificates_service
from certcheck.services.certificates import (
    build_certificate_email,
    generate_certificates,
    send_certificates_by_email,
)
from certcheck.services.renderer import render_certificate_image
from certcheck.shared.errors import (
    DecodeError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from certcheck.shared.qr import decode_qr
from certcheck.shared.storage import FileSystemObjectStore

from conftest import PUBLIC_BASE_URL, oversized_png_data_uri


pytestmark = pytest.mark.smoke


class RecordingStore(FileSystemObjectStore):
    def __init__(self, root, base_url, fail_overwrites=0, fail_placeholders=0, fail_all=False):
        super().__init__(root, base_url)
        self.puts = []
        self.fail_overwrites = fail_overwrites
        self.fail_placeholders = fail_placeholders
        self.fail_all = fail_all

    def put(self, path, data, *, overwrite=False):
        self.puts.append((path, overwrite))
        if self.fail_all:
            raise TransientStorageError("bucket unavailable")
        if overwrite and self.fail_overwrites:
            self.fail_overwrites -= 1
            raise TransientStorageError("overwrite rejected")
        if not overwrite and self.fail_placeholders:
            self.fail_placeholders -= 1
            raise TransientStorageError("placeholder upload rejected")
        return super().put(path, data, overwrite=overwrite)


class CountingRender:
    def __init__(self):
        self.payloads = []

    def __call__(self, template, resolve_field, qr_payload=None, **kwargs):
        self.payloads.append(qr_payload)
        return render_certificate_image(template, resolve_field, qr_payload, **kwargs)


def _store(**kwargs):
    base = get_object_store()
    return RecordingStore(base.root, base.base_url, **kwargs)


def login_user(client, user_id):
    with client.session_transaction() as sess:
        sess["organizer_id"] = user_id


def test_plain_template_renders_and_stores_once(seed):
    store = _store()
    render = CountingRender()

    result = generate_certificates(
        seed.organizer_id,
        seed.event_id,
        seed.plain_template_id,
        seed.registration_ids,
        store=store,
        render=render,
    )

    assert result.summary == "3 of 3 succeeded"
    assert render.payloads == [None, None, None]
    assert all(overwrite is False for _, overwrite in store.puts)
    assert len(store.puts) == 3
    for cert in result.generated:
        assert cert.has_qr is False
        assert cert.artifact_url.startswith(
            f"{PUBLIC_BASE_URL}/media/{seed.organizer_id}/certificates/"
        )
        assert cert.public_view_url == f"{PUBLIC_BASE_URL}/certificate/{cert.id}"
        assert store.get(f"{seed.organizer_id}/certificates/{cert.id}.png")


def test_recipient_names_follow_field_fallbacks(seed):
    result = generate_certificates(
        seed.organizer_id, seed.event_id, seed.plain_template_id, seed.registration_ids
    )

    names = {cert.registration_id: cert.recipient_name for cert in result.generated}
    assert names == {
        seed.ada_id: "Ada Lovelace",
        seed.grace_id: "Grace Hopper",
        seed.alan_id: "Alan Turing",
    }
    emails = {cert.registration_id: cert.recipient_email for cert in result.generated}
    assert emails[seed.alan_id] is None


def test_qr_template_embeds_public_view_url(seed):
    store = _store()
    render = CountingRender()

    result = generate_certificates(
        seed.organizer_id,
        seed.event_id,
        seed.qr_template_id,
        [seed.ada_id],
        store=store,
        render=render,
    )

    cert = result.generated[0]
    assert cert.has_qr is True
    assert render.payloads == [None, cert.public_view_url]
    path = f"{seed.organizer_id}/certificates/{cert.id}.png"
    assert store.puts == [(path, False), (path, True)]
    assert decode_qr(store.get(path)) == cert.public_view_url
    assert db.session.get(Certificate, cert.id).public_view_url.endswith(f"/certificate/{cert.id}")


def test_qr_overwrite_failure_keeps_placeholder(seed, caplog):
    caplog.set_level("INFO")
    store = _store(fail_overwrites=1)

    result = generate_certificates(
        seed.organizer_id, seed.event_id, seed.qr_template_id, [seed.ada_id], store=store
    )

    cert = result.generated[0]
    path = f"{seed.organizer_id}/certificates/{cert.id}.png"
    assert result.failures == []
    assert cert.has_qr is False
    assert store.puts == [(path, False), (path, True), (path, True)]
    with pytest.raises(DecodeError):
        decode_qr(store.get(path))
    assert any("[CERT-QR-FALLBACK]" in message for message in caplog.messages)


def _stored_certificates(store, owner_id):
    return sorted(os.listdir(os.path.join(store.root, str(owner_id), "certificates")))


def test_qr_placeholder_upload_failure_falls_back(seed):
    store = _store(fail_placeholders=1)

    result = generate_certificates(
        seed.organizer_id, seed.event_id, seed.qr_template_id, [seed.ada_id], store=store
    )

    cert = result.generated[0]
    path = f"{seed.organizer_id}/certificates/{cert.id}.png"
    assert result.failures == []
    assert cert.has_qr is False
    assert store.puts == [(path, False), (path, True)]
    assert _stored_certificates(store, seed.organizer_id) == [f"{cert.id}.png"]


def test_qr_final_render_failure_falls_back(seed):
    store = _store()

    def render(template, resolve_field, qr_payload=None, **kwargs):
        if qr_payload:
            raise RuntimeError("qr payload too long")
        return render_certificate_image(template, resolve_field, None, **kwargs)

    result = generate_certificates(
        seed.organizer_id,
        seed.event_id,
        seed.qr_template_id,
        [seed.ada_id],
        store=store,
        render=render,
    )

    cert = result.generated[0]
    path = f"{seed.organizer_id}/certificates/{cert.id}.png"
    assert cert.has_qr is False
    assert store.puts == [(path, False), (path, True)]
    assert _stored_certificates(store, seed.organizer_id) == [f"{cert.id}.png"]


def test_unexpected_render_error_fails_only_that_participant(seed, caplog):
    caplog.set_level("INFO")

    def render(template, resolve_field, qr_payload=None, **kwargs):
        if resolve_field.participant_name == "Grace Hopper":
            raise RuntimeError("font cache corrupted")
        return render_certificate_image(template, resolve_field, qr_payload, **kwargs)

    result = generate_certificates(
        seed.organizer_id,
        seed.event_id,
        seed.plain_template_id,
        seed.registration_ids,
        render=render,
    )

    assert result.summary == "2 of 3 succeeded"
    assert [failure.registration_id for failure in result.failures] == [seed.grace_id]
    assert result.failures[0].error == "font cache corrupted"
    assert len(PdfReader(BytesIO(result.document)).pages) == 2
    assert any("[CERT-FAIL]" in message for message in caplog.messages)


def test_oversized_background_renders_on_white(seed):
    template = db.session.get(CertificateTemplate, seed.plain_template_id)
    template.background_image = oversized_png_data_uri()
    db.session.commit()

    result = generate_certificates(
        seed.organizer_id, seed.event_id, seed.plain_template_id, seed.registration_ids
    )

    assert result.summary == "3 of 3 succeeded"
    assert result.failures == []


def test_storage_failure_is_recorded_per_participant(seed):
    store = _store(fail_all=True)

    result = generate_certificates(
        seed.organizer_id, seed.event_id, seed.plain_template_id, seed.registration_ids, store=store
    )

    assert result.generated == []
    assert result.summary == "0 of 3 succeeded"
    assert [failure.registration_id for failure in result.failures] == seed.registration_ids
    assert result.failures[0].participant_name == "Ada Lovelace"
    assert result.document == b""
    assert Certificate.query.count() == 0


def test_unknown_registrations_become_failures(seed):
    result = generate_certificates(
        seed.organizer_id,
        seed.event_id,
        seed.plain_template_id,
        [seed.ada_id, seed.pending_id, seed.single_reg_id],
    )

    assert result.total == 3
    assert [cert.registration_id for cert in result.generated] == [seed.ada_id]
    assert {failure.registration_id for failure in result.failures} == {
        seed.pending_id,
        seed.single_reg_id,
    }
    assert result.to_dict()["ok"] is False


def test_generation_validates_its_inputs(seed):
    with pytest.raises(ValidationError):
        generate_certificates(seed.organizer_id, seed.event_id, None, [seed.ada_id])
    with pytest.raises(ValidationError):
        generate_certificates(seed.organizer_id, None, seed.plain_template_id, [seed.ada_id])
    with pytest.raises(ValidationError):
        generate_certificates(seed.organizer_id, seed.event_id, seed.plain_template_id, [])
    with pytest.raises(ValidationError):
        generate_certificates(None, seed.event_id, seed.plain_template_id, [seed.ada_id])
    with pytest.raises(NotFoundError):
        generate_certificates(
            seed.other_id, seed.event_id, seed.plain_template_id, [seed.ada_id]
        )
    with pytest.raises(NotFoundError):
        generate_certificates(seed.organizer_id, seed.event_id, 999999, [seed.ada_id])


def test_combined_pdf_has_one_page_per_certificate(seed):
    result = generate_certificates(
        seed.organizer_id, seed.event_id, seed.plain_template_id, seed.registration_ids
    )

    reader = PdfReader(BytesIO(result.document))
    assert len(reader.pages) == 3
    box = reader.pages[0].mediabox
    assert (float(box.width), float(box.height)) == (400.0, 300.0)


def test_public_certificate_view(client, seed):
    result = generate_certificates(
        seed.organizer_id, seed.event_id, seed.plain_template_id, [seed.ada_id]
    )
    cert_id = result.generated[0].id

    resp = client.get(f"/certificate/{cert_id}")

    data = resp.get_json()
    assert resp.status_code == 200
    assert data["recipient_name"] == "Ada Lovelace"
    assert data["event_name"] == "Data Summit"
    assert data["image_url"].startswith(PUBLIC_BASE_URL)
    assert client.get("/certificate/does-not-exist").status_code == 404


def test_stored_artifact_is_served_from_media(client, seed):
    result = generate_certificates(
        seed.organizer_id, seed.event_id, seed.plain_template_id, [seed.ada_id]
    )
    path = result.generated[0].artifact_url[len(PUBLIC_BASE_URL):]

    resp = client.get(path)

    assert resp.status_code == 200
    assert resp.data.startswith(b"\x89PNG")


def test_generate_route_json_and_download(client, seed):
    login_user(client, seed.organizer_id)
    body = {
        "event_id": seed.event_id,
        "template_id": seed.plain_template_id,
        "registration_ids": [seed.ada_id, seed.grace_id],
    }

    resp = client.post("/certificates/generate", json=body)
    data = resp.get_json()
    assert resp.status_code == 200
    assert data["summary"] == "2 of 2 succeeded"
    assert len(data["generated"]) == 2

    resp = client.post("/certificates/generate?download=1", json=body)
    assert resp.status_code == 200
    assert resp.mimetype == "application/pdf"
    assert resp.data.startswith(b"%PDF")


def test_generate_route_reports_validation_errors(client, seed):
    login_user(client, seed.organizer_id)
    resp = client.post(
        "/certificates/generate",
        json={"event_id": seed.event_id, "registration_ids": [seed.ada_id]},
    )
    assert resp.status_code == 400
    assert resp.get_json() == {"ok": False, "error": "Select a certificate template."}


def test_email_variant_skips_participants_without_email(seed):
    sent = []

    def send(recipient, subject, body, html=None, to_name=None):
        sent.append((recipient, subject, body, html, to_name))
        return {"ok": True, "detail": "sent"}

    result = send_certificates_by_email(
        seed.organizer_id,
        seed.event_id,
        seed.plain_template_id,
        seed.email_template_id,
        seed.registration_ids,
        send=send,
    )

    assert [skip.registration_id for skip in result.skipped] == [seed.alan_id]
    assert result.total == 2
    assert result.emailed == {seed.ada_id: True, seed.grace_id: True}
    recipient, subject, body, html, to_name = sent[0]
    cert = result.generated[0]
    assert recipient == "ada@example.com"
    assert to_name == "Ada Lovelace"
    assert subject == "Your Data Summit certificate, Ada Lovelace"
    assert body == "Hi Ada Lovelace,\n\nThanks for joining Data Summit in Lisbon (ML)."
    assert "View Certificate" in html
    assert cert.artifact_url in html
    assert sent[1][1] == "Your Data Summit certificate, Grace Hopper"


def test_email_variant_requires_someone_with_email(seed):
    with pytest.raises(ValidationError):
        send_certificates_by_email(
            seed.organizer_id,
            seed.event_id,
            seed.plain_template_id,
            seed.email_template_id,
            [seed.alan_id],
            send=lambda *args, **kwargs: {"ok": True},
        )
    assert Certificate.query.count() == 0


def test_email_variant_rejects_malformed_email_template_id(seed):
    with pytest.raises(ValidationError):
        send_certificates_by_email(
            seed.organizer_id,
            seed.event_id,
            seed.plain_template_id,
            "welcome",
            [seed.ada_id],
        )


def test_email_variant_rejects_foreign_email_template(seed):
    foreign = EmailTemplate(owner_id=seed.other_id, name="x", subject="s", body="b")
    db.session.add(foreign)
    db.session.commit()

    with pytest.raises(NotFoundError):
        send_certificates_by_email(
            seed.organizer_id,
            seed.event_id,
            seed.plain_template_id,
            foreign.id,
            [seed.ada_id],
        )


def test_send_failure_keeps_certificate(seed, caplog):
    caplog.set_level("INFO")

    result = send_certificates_by_email(
        seed.organizer_id,
        seed.event_id,
        seed.plain_template_id,
        seed.email_template_id,
        [seed.ada_id],
        send=lambda *args, **kwargs: {"ok": False, "detail": "smtp down"},
    )

    assert result.emailed == {seed.ada_id: False}
    assert result.summary == "1 of 1 succeeded"
    assert Certificate.query.filter_by(registration_id=seed.ada_id).count() == 1
    assert any("[CERT-MAIL-FAIL]" in message for message in caplog.messages)


def test_send_without_smtp_config_is_stubbed(seed, monkeypatch):
    for name in ("SMTP_HOST", "SMTP_PORT", "SMTP_FROM_DEFAULT"):
        monkeypatch.delenv(name, raising=False)

    result = send_certificates_by_email(
        seed.organizer_id,
        seed.event_id,
        seed.plain_template_id,
        seed.email_template_id,
        [seed.ada_id],
    )

    assert result.emailed == {seed.ada_id: False}
    assert len(result.generated) == 1


def test_certificate_email_html_bodies_are_sent_as_is(seed):
    event = db.session.get(Event, seed.event_id)
    registration = db.session.get(Registration, seed.ada_id)
    template = EmailTemplate(
        owner_id=seed.organizer_id,
        name="html",
        subject="{{event_date}}",
        body="<p>{{name}}: <a href='{{certificate_url}}'>link</a></p>",
    )

    subject, body, html = build_certificate_email(
        template, registration, event, "https://x.test/c.png"
    )

    assert subject == "1–2 June 2024"
    assert html == body == "<p>Ada Lovelace: <a href='https://x.test/c.png'>link</a></p>"


def test_event_date_text_without_dates(seed):
    event = db.session.get(Event, seed.undated_event_id)
    assert certificates_service._event_date_text(event) == ""


def test_send_route_counts_emails(client, seed, monkeypatch):
    login_user(client, seed.organizer_id)
    monkeypatch.setattr(
        certificates_service.emailer,
        "send",
        lambda *args, **kwargs: {"ok": True, "detail": "sent"},
    )

    resp = client.post(
        "/certificates/send",
        json={
            "event_id": seed.event_id,
            "template_id": seed.plain_template_id,
            "email_template_id": seed.email_template_id,
            "registration_ids": seed.registration_ids,
        },
    )

    data = resp.get_json()
    assert resp.status_code == 200
    assert data["emailed"] == 2
    assert [skip["registration_id"] for skip in data["skipped"]] == [seed.alan_id]
