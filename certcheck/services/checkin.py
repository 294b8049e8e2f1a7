"""Per-registration, per-day attendance ledger.

Every mutation reads and writes one (registration, day) row while holding a
process-local lock for that key, then commits.  The unique constraint on
``(registration_id, day_bucket)`` covers writers in other processes: a losing
insert is rolled back and the transition is applied once more against the
row that won.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Iterable

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..app import db
from ..models import (
    CHECKIN_DONE,
    CHECKIN_STATUSES,
    CHECKIN_UNDONE,
    COLLECTIVE_DAY_LABEL,
    CheckinRecord,
    Event,
    Registration,
)
from ..shared.errors import AuthError, CertcheckError, NotFoundError, ValidationError
from ..shared.time import coerce_date, fmt_day, now_utc

MODE_COLLECTIVE = "collective"
MODE_PER_DAY = "per_day"

_MAX_ATTEMPTS = 2


@dataclass(frozen=True)
class EventDay:
    id: str
    label: str
    date: date

    def to_dict(self) -> dict:
        return {"id": self.id, "label": self.label, "date": self.date.isoformat()}


@dataclass
class BulkToggleResult:
    succeeded: list[CheckinRecord] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


class KeyedLocks:
    """Hands out one lock per key; shared by all requests in a process."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[tuple, threading.Lock] = {}

    def __call__(self, key: tuple) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


def _locks() -> KeyedLocks:
    return current_app.extensions.setdefault("certcheck.checkin_locks", KeyedLocks())


def derive_event_days(dates: Iterable | None) -> list[EventDay]:
    """Expand date ranges into sorted, de-duplicated calendar days.

    Each range is ``{"start": ..., "end": ...}``; a missing end means a single
    day and a range ending before its start contributes only its start.
    """

    seen: set[date] = set()
    for entry in dates or []:
        if isinstance(entry, dict):
            start = coerce_date(entry.get("start"))
            end = coerce_date(entry.get("end"))
        else:
            start = coerce_date(entry)
            end = None
        if start is None:
            continue
        if end is None or end < start:
            end = start
        current = start
        while current <= end:
            seen.add(current)
            current += timedelta(days=1)
    return [EventDay(id=d.isoformat(), label=fmt_day(d), date=d) for d in sorted(seen)]


def default_mode(days: list[EventDay]) -> str:
    return MODE_PER_DAY if len(days) > 1 else MODE_COLLECTIVE


def _require_actor(actor_id: int | None) -> int:
    if not actor_id:
        raise AuthError("You must be logged in to record check-in.")
    return actor_id


def _ensure_registration(event: Event, registration_id: int) -> Registration:
    registration = db.session.get(Registration, registration_id)
    if (
        not registration
        or registration.event_id != event.id
        or registration.status != "accepted"
    ):
        raise NotFoundError("Registration is not part of this event.")
    return registration


def _validate_day(event: Event, day_key: str | None) -> EventDay | None:
    if day_key is None:
        return None
    days = derive_event_days(event.dates)
    if not days:
        raise ValidationError("This event has no days; only collective check-in is allowed.")
    for day in days:
        if day.id == day_key:
            return day
    raise ValidationError(f"Day {day_key} is not one of the event's days.")


def _normalize_day_key(day_key) -> str | None:
    if day_key is None:
        return None
    day_key = str(day_key).strip()
    return day_key or None


def _find(registration_id: int, day_key: str | None) -> CheckinRecord | None:
    return CheckinRecord.query.filter_by(
        registration_id=registration_id,
        day_bucket=CheckinRecord.bucket_for(day_key),
    ).one_or_none()


def _apply_status(record: CheckinRecord, status: str, actor_id: int) -> None:
    now = now_utc()
    if status == CHECKIN_DONE:
        if not record.is_done:
            record.checked_in_at = now
            record.checked_in_by = actor_id
        record.status = CHECKIN_DONE
    else:
        record.status = CHECKIN_UNDONE
        record.checked_in_at = None
        record.checked_in_by = None
    record.updated_at = now


def _mutate(event, registration_id, day_key, actor_id, day_label, transition) -> CheckinRecord:
    registration_id = int(registration_id)
    day_key = _normalize_day_key(day_key)
    actor_id = _require_actor(actor_id)
    _ensure_registration(event, registration_id)
    day = _validate_day(event, day_key)
    label = day_label or (day.id if day else COLLECTIVE_DAY_LABEL)

    lock = _locks()((registration_id, CheckinRecord.bucket_for(day_key)))
    with lock:
        attempt = 0
        while True:
            attempt += 1
            record = _find(registration_id, day_key)
            if record is None:
                record = CheckinRecord(
                    owner_id=event.owner_id,
                    event_id=event.id,
                    registration_id=registration_id,
                    day_key=day_key,
                    day_bucket=CheckinRecord.bucket_for(day_key),
                    day_label=label,
                    status=CHECKIN_UNDONE,
                )
                db.session.add(record)
            elif day_label:
                record.day_label = day_label
            transition(record)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                if attempt >= _MAX_ATTEMPTS:
                    raise
                current_app.logger.info(
                    "[CHECKIN] concurrent insert registration=%s day=%s; retrying",
                    registration_id,
                    day_key,
                )
                continue
            return record


def toggle(
    event: Event,
    registration_id: int,
    day_key: str | None,
    actor_id: int | None,
    day_label: str | None = None,
) -> CheckinRecord:
    """Flip one check-in between done and undone."""

    def transition(record: CheckinRecord) -> None:
        _apply_status(record, CHECKIN_UNDONE if record.is_done else CHECKIN_DONE, actor_id)

    record = _mutate(event, registration_id, day_key, actor_id, day_label, transition)
    current_app.logger.info(
        "[CHECKIN] toggle event=%s registration=%s day=%s status=%s by=%s",
        event.id,
        record.registration_id,
        record.day_key,
        record.status,
        actor_id,
    )
    return record


def set_status(
    event: Event,
    registration_id: int,
    day_key: str | None,
    status: str,
    actor_id: int | None,
    notes: str | None = None,
    day_label: str | None = None,
) -> CheckinRecord:
    """Idempotently set one check-in to ``status``.

    Setting ``done`` on a row that is already done keeps the original
    ``checked_in_at`` and only refreshes ``updated_at``.
    """

    if status not in CHECKIN_STATUSES:
        raise ValidationError("status must be 'done' or 'undone'.")

    def transition(record: CheckinRecord) -> None:
        _apply_status(record, status, actor_id)
        if notes is not None:
            record.notes = notes

    record = _mutate(event, registration_id, day_key, actor_id, day_label, transition)
    current_app.logger.info(
        "[CHECKIN] set event=%s registration=%s day=%s status=%s by=%s",
        event.id,
        record.registration_id,
        record.day_key,
        record.status,
        actor_id,
    )
    return record


def bulk_toggle(
    event: Event,
    registration_ids: Iterable[int],
    day_key: str | None,
    actor_id: int | None,
    day_label: str | None = None,
) -> BulkToggleResult:
    """Toggle each registration independently, collecting per-id failures."""

    _require_actor(actor_id)
    result = BulkToggleResult()
    for registration_id in registration_ids:
        try:
            result.succeeded.append(
                toggle(event, registration_id, day_key, actor_id, day_label)
            )
        except (CertcheckError, SQLAlchemyError, ValueError, TypeError) as exc:
            db.session.rollback()
            result.failed[registration_id] = str(exc)
            current_app.logger.warning(
                "[CHECKIN] bulk toggle failed event=%s registration=%s error=%s",
                event.id,
                registration_id,
                exc,
            )
    return result


def get_checkin(registration_id: int, day_key: str | None) -> CheckinRecord | None:
    return _find(int(registration_id), _normalize_day_key(day_key))


def status_of(registration_id: int, day_key: str | None) -> bool:
    """True iff a done row exists for exactly this (registration, day)."""
    record = get_checkin(registration_id, day_key)
    return bool(record and record.is_done)


def batch_status(registration_ids: Iterable[int]) -> dict[int, list[CheckinRecord]]:
    """Fetch every check-in row for the given registrations in one query."""

    ids = [int(rid) for rid in registration_ids]
    result: dict[int, list[CheckinRecord]] = {rid: [] for rid in ids}
    if not ids:
        return result
    rows = (
        CheckinRecord.query.filter(CheckinRecord.registration_id.in_(ids))
        .order_by(CheckinRecord.registration_id, CheckinRecord.day_bucket)
        .all()
    )
    for row in rows:
        result[row.registration_id].append(row)
    return result


def event_checkins(event: Event) -> list[CheckinRecord]:
    return (
        CheckinRecord.query.filter_by(event_id=event.id)
        .order_by(CheckinRecord.registration_id, CheckinRecord.day_bucket)
        .all()
    )


def checked_in_count(event: Event, registration_ids: Iterable[int], mode: str) -> int:
    """Count checked-in registrations for the summary header.

    Collective mode counts collective rows; per-day mode counts a
    registration once if any of its days is done.
    """

    statuses = batch_status(registration_ids)
    count = 0
    for rows in statuses.values():
        done = [row for row in rows if row.is_done and row.event_id == event.id]
        if mode == MODE_COLLECTIVE:
            done = [row for row in done if row.day_key is None]
        else:
            done = [row for row in done if row.day_key is not None]
        if done:
            count += 1
    return count
