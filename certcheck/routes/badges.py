from __future__ import annotations

from flask import Blueprint, jsonify, request

from ..services.badges import badge_to_dict, badges_for_event, generate_badges
from ..shared.acl import event_owner_required

bp = Blueprint("badges", __name__, url_prefix="/events")


@bp.get("/<int:event_id>/badges")
@event_owner_required
def list_badges(event_id: int, event, current_user):
    return jsonify({"ok": True, "badges": [badge_to_dict(b) for b in badges_for_event(event)]})


@bp.post("/<int:event_id>/badges")
@event_owner_required
def issue_badges(event_id: int, event, current_user):
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form.to_dict()
    batch = generate_badges(
        current_user.id,
        event.id,
        payload.get("template_id"),
        payload.get("registration_ids") or [],
    )
    return jsonify(batch.to_dict())
