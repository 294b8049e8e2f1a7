"""Live badge scanning: camera frames to idempotent collective check-ins."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterable

import cv2
from flask import Flask, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..app import db
from ..models import CHECKIN_DONE, CheckinRecord, Event
from ..shared.errors import AuthError, CertcheckError, DecodeError, NotFoundError, ValidationError
from ..shared.qr import QRDecoder
from .badges import BadgeLookup, event_name, resolve_badge
from .checkin import set_status

logger = logging.getLogger("certcheck.scanner")

SCAN_INTERVAL = 0.5
_FALLBACK_CAMERA_INDICES = range(0, 4)


class ScanStatus(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CHECKING_IN = "checking_in"
    CHECKED_IN = "checked_in"
    ERROR = "error"


@dataclass(frozen=True)
class ScanState:
    status: ScanStatus = ScanStatus.IDLE
    error: str | None = None
    badge_url: str | None = None
    event_name: str | None = None
    participant_name: str | None = None
    registration_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "error": self.error,
            "badge_url": self.badge_url,
            "event_name": self.event_name,
            "participant_name": self.participant_name,
            "registration_id": self.registration_id,
        }


class OpenCVCamera:
    """Frame source over cv2.VideoCapture.

    ``indices`` lists preferred devices (the rear camera first); when none of
    them opens, any device that does is used.
    """

    def __init__(self, indices: Iterable[int] = (1, 0)):
        self.indices = list(indices)
        self._cap = None

    def open(self) -> None:
        tried: list[int] = []
        for index in [*self.indices, *_FALLBACK_CAMERA_INDICES]:
            if index in tried:
                continue
            tried.append(index)
            cap = cv2.VideoCapture(index)
            if cap.isOpened():
                self._cap = cap
                logger.info("[SCAN] camera opened index=%s", index)
                return
            cap.release()
        raise OSError("No camera device is available.")

    def read(self):
        if self._cap is None:
            return None
        ok, frame = self._cap.read()
        return frame if ok else None

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None


def record_scan_checkin(
    lookup: BadgeLookup,
    actor_id: int,
    day_key: str | None = None,
    day_label: str | None = None,
) -> CheckinRecord:
    """Absolute set to done; a repeated scan never undoes a check-in."""

    event = db.session.get(Event, lookup.event_id)
    if event is None or event.owner_id != actor_id:
        raise NotFoundError("No badge found for this QR code.")
    return set_status(
        event,
        lookup.registration_id,
        day_key,
        CHECKIN_DONE,
        actor_id,
        day_label=day_label,
    )


class BadgeScanner:
    """State machine for QR badge scans.

    ``handle_payload`` runs synchronously, so while one payload is being
    resolved and checked in no other payload is processed.  The last payload
    is memoized and identical re-reads are ignored until ``reset`` or an
    error clears the memo.
    """

    def __init__(
        self,
        actor_id: int | None,
        *,
        day_key: str | None = None,
        day_label: str | None = None,
        event_id: int | None = None,
        app: Flask | None = None,
        camera: OpenCVCamera | None = None,
        interval: float | None = None,
        resolve: Callable[[str], BadgeLookup] = resolve_badge,
        lookup_event_name: Callable[[int], str | None] = event_name,
        check_in: Callable[..., CheckinRecord] = record_scan_checkin,
        decode: Callable | None = None,
        on_change: Callable[[ScanState], None] | None = None,
    ):
        self.actor_id = actor_id
        self.day_key = day_key
        self.day_label = day_label
        self.event_id = event_id
        self.app = app or current_app._get_current_object()
        self.camera = camera
        self.interval = interval if interval is not None else self.app.config.get(
            "SCANNER_INTERVAL", SCAN_INTERVAL
        )
        self._resolve = resolve
        self._event_name = lookup_event_name
        self._check_in = check_in
        self._decode = decode or QRDecoder()
        self._on_change = on_change

        self._lock = threading.RLock()
        self._state = ScanState()
        self._last_processed: str | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> ScanState:
        with self._lock:
            return self._state

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _set(self, state: ScanState) -> ScanState:
        with self._lock:
            self._state = state
        if self._on_change is not None:
            self._on_change(state)
        return state

    def _fail(self, message: str, base: ScanState) -> ScanState:
        with self._lock:
            self._last_processed = None
        logger.warning("[SCAN] error badge=%s message=%s", base.badge_url, message)
        return self._set(replace(base, status=ScanStatus.ERROR, error=message))

    def handle_payload(self, text: str | None) -> ScanState:
        payload = (text or "").strip()
        with self._lock:
            if not payload or payload == self._last_processed:
                return self._state
            self._last_processed = payload

        state = self._set(ScanState(status=ScanStatus.SCANNING, badge_url=payload))
        try:
            if not payload.lower().startswith("http"):
                raise ValidationError("QR code does not contain a valid URL.")
            lookup = self._resolve(payload)
            if self.event_id is not None and lookup.event_id != self.event_id:
                raise ValidationError("This badge belongs to a different event.")
            state = replace(
                state,
                participant_name=lookup.participant_name,
                registration_id=lookup.registration_id,
            )
            try:
                state = replace(state, event_name=self._event_name(lookup.event_id))
            except (CertcheckError, SQLAlchemyError) as exc:
                db.session.rollback()
                logger.info("[SCAN] event name unavailable event=%s error=%s", lookup.event_id, exc)
            if not self.actor_id:
                raise AuthError("You must be logged in to record check-in.")
            state = self._set(replace(state, status=ScanStatus.CHECKING_IN))
            self._check_in(lookup, self.actor_id, self.day_key, self.day_label)
        except CertcheckError as exc:
            return self._fail(str(exc), state)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("[SCAN] check-in failed badge=%s", payload)
            return self._fail("Failed to record check-in.", state)
        except Exception:
            db.session.rollback()
            logger.exception("[SCAN] processing failed badge=%s", payload)
            return self._fail("Failed to process QR code.", state)

        logger.info(
            "[SCAN] checked in registration=%s event=%s",
            state.registration_id,
            state.event_name,
        )
        return self._set(replace(state, status=ScanStatus.CHECKED_IN, error=None))

    def decode_image(self, image) -> ScanState:
        """Decode one still image and process its payload."""
        try:
            payload = self._decode(image)
        except DecodeError as exc:
            return self._fail(str(exc), ScanState(status=ScanStatus.SCANNING))
        except Exception:
            logger.exception("[SCAN] image decode failed")
            return self._fail("Failed to process QR code.", ScanState(status=ScanStatus.SCANNING))
        return self.handle_payload(payload)

    def reset(self) -> ScanState:
        """Forget the current scan so the same badge can be scanned again."""
        with self._lock:
            self._last_processed = None
        return self._set(ScanState())

    def tick(self) -> ScanState:
        if self.camera is None:
            return self.state
        frame = self.camera.read()
        if frame is None:
            return self.state
        try:
            payload = self._decode(frame)
        except DecodeError:
            return self.state
        with self.app.app_context():
            return self.handle_payload(payload)

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    self.tick()
                except Exception:
                    logger.exception("[SCAN] frame processing failed")
                self._stop.wait(self.interval)
        finally:
            self.camera.release()

    def start(self) -> bool:
        if self.running:
            return True
        if self.camera is None:
            self.camera = OpenCVCamera(self.app.config.get("SCANNER_CAMERA_INDICES", (1, 0)))
        try:
            self.camera.open()
        except OSError as exc:
            self.camera.release()
            self._fail(f"Unable to access camera: {exc}", self.state)
            return False
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="badge-scanner", daemon=True)
        self._thread.start()
        return True

    def stop(self) -> None:
        self._stop.set()
        thread, self._thread = self._thread, None
        if thread is None:
            return
        thread.join(timeout=max(self.interval * 4, 2.0))
        if thread.is_alive():
            logger.warning("[SCAN] thread still running after stop; camera released on exit")

    def __enter__(self) -> "BadgeScanner":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
