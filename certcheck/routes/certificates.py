from __future__ import annotations

from io import BytesIO

from flask import Blueprint, jsonify, request, send_file

from ..services.certificates import generate_certificates, send_certificates_by_email
from ..shared.acl import organizer_required

bp = Blueprint("certificates", __name__, url_prefix="/certificates")


def _payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form.to_dict()
    return payload or {}


@bp.post("/generate")
@organizer_required
def generate(current_user):
    payload = _payload()
    result = generate_certificates(
        current_user.id,
        payload.get("event_id"),
        payload.get("template_id"),
        payload.get("registration_ids") or [],
    )
    if request.args.get("download") == "1" and result.document:
        return send_file(
            BytesIO(result.document),
            mimetype="application/pdf",
            as_attachment=True,
            download_name=f"certificates-event-{payload.get('event_id')}.pdf",
        )
    return jsonify(result.to_dict())


@bp.post("/send")
@organizer_required
def send(current_user):
    payload = _payload()
    result = send_certificates_by_email(
        current_user.id,
        payload.get("event_id"),
        payload.get("template_id"),
        payload.get("email_template_id"),
        payload.get("registration_ids") or [],
    )
    body = result.to_dict()
    body["emailed"] = sum(1 for ok in result.emailed.values() if ok)
    return jsonify(body)
