from __future__ import annotations

from flask import Blueprint, jsonify, request

from ..models import Registration
from ..services import checkin as checkin_service
from ..services.scanner import BadgeScanner, ScanStatus
from ..shared.acl import event_owner_required
from ..shared.errors import ValidationError

bp = Blueprint("checkin", __name__, url_prefix="/events")


def _payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        payload = request.form.to_dict()
    return payload or {}


def _require_int(payload: dict, key: str) -> int:
    raw = payload.get(key)
    if raw is None or raw == "":
        raise ValidationError(f"{key} is required.")
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer.") from None


def _require_int_list(payload: dict, key: str) -> list[int]:
    raw = payload.get(key)
    if not isinstance(raw, list):
        raise ValidationError(f"{key} must be a list.")
    try:
        return [int(value) for value in raw]
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must contain integers.") from None


@bp.get("/<int:event_id>/checkin/days")
@event_owner_required
def event_days(event_id: int, event, current_user):
    days = checkin_service.derive_event_days(event.dates)
    mode = checkin_service.default_mode(days)
    registration_ids = [
        row.id
        for row in Registration.query.with_entities(Registration.id).filter_by(
            event_id=event.id, status="accepted"
        )
    ]
    return jsonify(
        {
            "ok": True,
            "days": [day.to_dict() for day in days],
            "mode": mode,
            "participants": len(registration_ids),
            "checked_in": checkin_service.checked_in_count(event, registration_ids, mode),
        }
    )


@bp.get("/<int:event_id>/checkin/status")
@event_owner_required
def checkin_status(event_id: int, event, current_user):
    registration_id = _require_int(request.args, "registration_id")
    day_key = request.args.get("day") or None
    record = checkin_service.get_checkin(registration_id, day_key)
    if record is not None and record.event_id != event.id:
        record = None
    return jsonify(
        {
            "ok": True,
            "done": bool(record and record.is_done),
            "record": record.to_dict() if record else None,
        }
    )


@bp.post("/<int:event_id>/checkin/batch_status")
@event_owner_required
def checkin_batch_status(event_id: int, event, current_user):
    registration_ids = _require_int_list(_payload(), "registration_ids")
    statuses = checkin_service.batch_status(registration_ids)
    return jsonify(
        {
            "ok": True,
            "statuses": {
                str(rid): [row.to_dict() for row in rows if row.event_id == event.id]
                for rid, rows in statuses.items()
            },
        }
    )


@bp.post("/<int:event_id>/checkin/toggle")
@event_owner_required
def checkin_toggle(event_id: int, event, current_user):
    payload = _payload()
    record = checkin_service.toggle(
        event,
        _require_int(payload, "registration_id"),
        payload.get("day_key"),
        current_user.id,
        day_label=payload.get("day_label"),
    )
    return jsonify({"ok": True, "record": record.to_dict()})


@bp.post("/<int:event_id>/checkin/bulk_toggle")
@event_owner_required
def checkin_bulk_toggle(event_id: int, event, current_user):
    payload = _payload()
    result = checkin_service.bulk_toggle(
        event,
        _require_int_list(payload, "registration_ids"),
        payload.get("day_key"),
        current_user.id,
        day_label=payload.get("day_label"),
    )
    return jsonify(
        {
            "ok": not result.failed,
            "succeeded": [record.to_dict() for record in result.succeeded],
            "failed": {str(rid): error for rid, error in result.failed.items()},
        }
    )


@bp.post("/<int:event_id>/checkin/set")
@event_owner_required
def checkin_set(event_id: int, event, current_user):
    payload = _payload()
    status = payload.get("status")
    if status not in ("done", "undone"):
        raise ValidationError("status must be 'done' or 'undone'.")
    record = checkin_service.set_status(
        event,
        _require_int(payload, "registration_id"),
        payload.get("day_key"),
        status,
        current_user.id,
        notes=payload.get("notes"),
        day_label=payload.get("day_label"),
    )
    return jsonify({"ok": True, "record": record.to_dict()})


@bp.post("/<int:event_id>/checkin/scan")
@event_owner_required
def checkin_scan(event_id: int, event, current_user):
    payload = _payload()
    text = payload.get("payload")
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("payload is required.")
    scanner = BadgeScanner(
        current_user.id,
        day_key=payload.get("day_key"),
        event_id=event.id,
    )
    state = scanner.handle_payload(text)
    code = 200 if state.status is ScanStatus.CHECKED_IN else 400
    return jsonify({"ok": code == 200, **state.to_dict()}), code
