from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from .errors import ValidationError

logger = logging.getLogger("certcheck.templates")

DEFAULT_FONT_FAMILY = "Helvetica"
DEFAULT_FONT_SIZE = 24
DEFAULT_COLOR = "#000000"
TEXT_ALIGNS = ("left", "center", "right")
FONT_WEIGHTS = ("normal", "bold")


class ElementKind(str, Enum):
    TEXT = "text"
    FIELD = "field"
    QR = "qr"


@dataclass(frozen=True)
class Element:
    """One positioned item on a certificate canvas.

    ``x``/``y`` are percentages of the canvas and mark the element's anchor.
    For ``qr`` elements ``font_size`` is the edge length of the code in px.
    """

    kind: ElementKind
    x: float
    y: float
    font_size: int = DEFAULT_FONT_SIZE
    content: str = ""
    font_family: str = DEFAULT_FONT_FAMILY
    font_weight: str = "normal"
    color: str = DEFAULT_COLOR
    text_align: str = "center"


@dataclass(frozen=True)
class Template:
    id: int | None
    width: int
    height: int
    background_image: str | None = None
    elements: tuple[Element, ...] = field(default_factory=tuple)

    @property
    def has_qr(self) -> bool:
        return any(el.kind is ElementKind.QR for el in self.elements)


def _clamp_percent(value: Any) -> float:
    number = float(value)
    if number != number:  # NaN
        raise ValueError("coordinate is NaN")
    return max(0.0, min(100.0, number))


def parse_element(raw: Any) -> Element:
    """Build an Element from its stored mapping; raise ValueError if malformed."""

    if not isinstance(raw, dict):
        raise ValueError("element must be a mapping")
    try:
        kind = ElementKind(str(raw.get("type", "")).lower())
    except ValueError:
        raise ValueError(f"unknown element type {raw.get('type')!r}") from None
    try:
        x = _clamp_percent(raw.get("x"))
        y = _clamp_percent(raw.get("y"))
    except (TypeError, ValueError):
        raise ValueError("element coordinates must be numeric") from None
    try:
        font_size = int(round(float(raw.get("font_size", raw.get("fontSize", DEFAULT_FONT_SIZE)))))
    except (TypeError, ValueError):
        font_size = DEFAULT_FONT_SIZE
    font_size = max(1, font_size)

    weight = str(raw.get("font_weight", raw.get("fontWeight", "normal")) or "normal").lower()
    if weight not in FONT_WEIGHTS:
        weight = "bold" if weight.isdigit() and int(weight) >= 600 else "normal"
    align = str(raw.get("text_align", raw.get("textAlign", "center")) or "center").lower()
    if align not in TEXT_ALIGNS:
        align = "center"

    return Element(
        kind=kind,
        x=x,
        y=y,
        font_size=font_size,
        content=str(raw.get("content") or ""),
        font_family=str(raw.get("font_family", raw.get("fontFamily")) or DEFAULT_FONT_FAMILY),
        font_weight=weight,
        color=str(raw.get("color") or DEFAULT_COLOR),
        text_align=align,
    )


def sanitize_elements(raw_elements: Iterable[Any] | None) -> tuple[Element, ...]:
    """Parse stored elements, dropping malformed entries with a warning."""

    elements: list[Element] = []
    for index, raw in enumerate(raw_elements or []):
        try:
            elements.append(parse_element(raw))
        except ValueError as exc:
            logger.warning("[TEMPLATE] dropped element index=%s reason=%s", index, exc)
    return tuple(elements)


def template_from_model(model) -> Template:
    """Snapshot a CertificateTemplate row into an immutable Template."""

    width = int(model.width or 0)
    height = int(model.height or 0)
    if width <= 0 or height <= 0:
        raise ValidationError("Template width and height must be positive.")
    return Template(
        id=model.id,
        width=width,
        height=height,
        background_image=model.background_image or None,
        elements=sanitize_elements(model.elements),
    )
