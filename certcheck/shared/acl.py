from __future__ import annotations

from functools import wraps

from flask import abort, jsonify, session as flask_session

from ..app import db
from ..models import Event, Organizer


def current_organizer() -> Organizer | None:
    organizer_id = flask_session.get("organizer_id")
    if not organizer_id:
        return None
    return db.session.get(Organizer, organizer_id)


def _unauthorized():
    return jsonify({"ok": False, "error": "Login required."}), 401


def organizer_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        current_user = current_organizer()
        if not current_user:
            return _unauthorized()
        return fn(*args, **kwargs, current_user=current_user)

    return wrapper


def event_owner_required(fn):
    """Load the event from the URL and require the session organizer to own it."""

    @wraps(fn)
    def wrapper(event_id: int, *args, **kwargs):
        current_user = current_organizer()
        if not current_user:
            return _unauthorized()
        event = db.session.get(Event, event_id)
        if not event or event.owner_id != current_user.id:
            abort(404)
        return fn(
            event_id,
            *args,
            **kwargs,
            event=event,
            current_user=current_user,
        )

    return wrapper
