from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, session as flask_session
from sqlalchemy import func

from ..app import db
from ..models import Organizer
from ..shared.acl import organizer_required

bp = Blueprint("auth", __name__, url_prefix="/auth")


@bp.post("/login")
def login():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    if not email or not password:
        return jsonify({"ok": False, "error": "email and password are required."}), 400

    organizer = (
        db.session.query(Organizer)
        .filter(func.lower(Organizer.email) == email)
        .one_or_none()
    )
    if not organizer or not organizer.check_password(password):
        current_app.logger.info("[AUTH-FAIL] email=%s reason=credentials", email)
        return jsonify({"ok": False, "error": "Invalid email or password."}), 401

    flask_session.clear()
    flask_session["organizer_id"] = organizer.id
    current_app.logger.info("[AUTH] login organizer=%s", organizer.id)
    return jsonify({"ok": True, "organizer": {"id": organizer.id, "email": organizer.email}})


@bp.post("/logout")
def logout():
    flask_session.pop("organizer_id", None)
    return jsonify({"ok": True})


@bp.get("/me")
@organizer_required
def me(current_user):
    return jsonify(
        {
            "ok": True,
            "organizer": {
                "id": current_user.id,
                "email": current_user.email,
                "full_name": current_user.full_name,
            },
        }
    )
