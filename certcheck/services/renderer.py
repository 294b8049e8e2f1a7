from __future__ import annotations

import base64
import binascii
import logging
import os
from io import BytesIO
from typing import Callable

import requests
from PIL import Image, ImageColor, ImageDraw, ImageFont, ImageOps
from flask import current_app, has_app_context

from ..shared.certificates_layout import Element, ElementKind, Template
from ..shared.fields import FieldKey
from ..shared.qr import encode_qr

logger = logging.getLogger("certcheck.renderer")

RENDER_SCALE = 2
BACKGROUND_FETCH_TIMEOUT = 5.0

_PLACEHOLDER_FILL = "#f3f4f6"
_PLACEHOLDER_BORDER = "#9ca3af"
_PLACEHOLDER_TEXT = "#6b7280"
_PLACEHOLDER_BORDER_PX = 2

_DEJAVU = "/usr/share/fonts/truetype/dejavu"
_FONT_FILES = {
    "sans": ("DejaVuSans.ttf", "DejaVuSans-Bold.ttf"),
    "serif": ("DejaVuSerif.ttf", "DejaVuSerif-Bold.ttf"),
    "mono": ("DejaVuSansMono.ttf", "DejaVuSansMono-Bold.ttf"),
}
_FAMILY_GROUPS = {
    "serif": ("times", "serif", "georgia", "garamond", "playfair", "merriweather"),
    "mono": ("courier", "mono", "consolas"),
}

ResolveField = Callable[[FieldKey], str]
BackgroundLoader = Callable[[str], "Image.Image | None"]


def _family_group(family: str) -> str:
    lowered = (family or "").lower()
    for group, needles in _FAMILY_GROUPS.items():
        if any(needle in lowered for needle in needles):
            return group
    return "sans"


def _font_path(family: str, weight: str) -> str:
    regular, bold = _FONT_FILES[_family_group(family)]
    return os.path.join(_DEJAVU, bold if weight == "bold" else regular)


def _load_font(family: str, weight: str, size_px: int) -> ImageFont.FreeTypeFont:
    size_px = max(int(size_px), 1)
    try:
        return ImageFont.truetype(_font_path(family, weight), size_px)
    except OSError:
        return ImageFont.load_default(size=size_px)


def _parse_color(value: str) -> tuple[int, int, int]:
    try:
        return ImageColor.getrgb(value)[:3]
    except (ValueError, TypeError):
        return (0, 0, 0)


def _fetch_timeout() -> float:
    if has_app_context():
        return float(current_app.config.get("BACKGROUND_FETCH_TIMEOUT", BACKGROUND_FETCH_TIMEOUT))
    return BACKGROUND_FETCH_TIMEOUT


def read_background_bytes(source: str, timeout: float | None = None) -> bytes:
    """Return raw image bytes for a data URI, an http(s) URL or a local path."""

    if source.startswith("data:"):
        _, _, payload = source.partition(",")
        return base64.b64decode(payload, validate=False)
    if source.startswith(("http://", "https://")):
        resp = requests.get(source, timeout=timeout or _fetch_timeout())
        resp.raise_for_status()
        return resp.content
    with open(source, "rb") as handle:
        return handle.read()


def load_background(source: str | None, timeout: float | None = None) -> Image.Image | None:
    """Best-effort background load; any failure yields None and a warning."""

    if not source:
        return None
    try:
        data = read_background_bytes(source, timeout)
        image = Image.open(BytesIO(data))
        image.load()
        return image.convert("RGB")
    except (
        requests.RequestException,
        OSError,
        ValueError,
        binascii.Error,
        Image.DecompressionBombError,
    ) as exc:
        logger.warning("[RENDER-BG] background unavailable source=%.80s error=%s", source, exc)
        return None


class BackgroundCache:
    """Per-run memo of decoded backgrounds keyed by source string."""

    def __init__(self, loader: BackgroundLoader | None = None):
        self._loader = loader or load_background
        self._images: dict[str, Image.Image | None] = {}

    def __call__(self, source: str) -> Image.Image | None:
        if source not in self._images:
            self._images[source] = self._loader(source)
        return self._images[source]


def _canvas(template: Template, scale: int, background_loader: BackgroundLoader) -> Image.Image:
    size = (template.width * scale, template.height * scale)
    background = background_loader(template.background_image) if template.background_image else None
    if background is None:
        return Image.new("RGB", size, "white")
    return ImageOps.fit(background, size, method=Image.LANCZOS)


def _draw_dashed_rect(draw: ImageDraw.ImageDraw, box: tuple[int, int, int, int], color, width: int):
    left, top, right, bottom = box
    dash = max(width * 3, 4)
    for start in range(left, right, dash * 2):
        end = min(start + dash, right)
        draw.line([(start, top), (end, top)], fill=color, width=width)
        draw.line([(start, bottom), (end, bottom)], fill=color, width=width)
    for start in range(top, bottom, dash * 2):
        end = min(start + dash, bottom)
        draw.line([(left, start), (left, end)], fill=color, width=width)
        draw.line([(right, start), (right, end)], fill=color, width=width)


def _draw_qr_placeholder(draw: ImageDraw.ImageDraw, box: tuple[int, int, int, int], scale: int):
    draw.rectangle(box, fill=_PLACEHOLDER_FILL)
    _draw_dashed_rect(draw, box, _PLACEHOLDER_BORDER, _PLACEHOLDER_BORDER_PX * scale)
    edge = box[2] - box[0]
    font = _load_font("sans", "bold", max(edge // 4, 1))
    center = ((box[0] + box[2]) / 2, (box[1] + box[3]) / 2)
    draw.text(center, "QR", font=font, fill=_PLACEHOLDER_TEXT, anchor="mm")


def _draw_text(draw: ImageDraw.ImageDraw, element: Element, text: str, anchor_xy, scale: int):
    if not text:
        return
    font = _load_font(element.font_family, element.font_weight, element.font_size * scale)
    anchor = {"left": "lm", "right": "rm"}.get(element.text_align, "mm")
    draw.text(
        anchor_xy,
        text,
        font=font,
        fill=_parse_color(element.color),
        anchor=anchor,
    )


def render_certificate_image(
    template: Template,
    resolve_field: ResolveField,
    qr_payload: str | None = None,
    *,
    background_loader: BackgroundLoader | None = None,
    scale: int = RENDER_SCALE,
) -> bytes:
    """Render template to PNG bytes at ``scale`` times its logical size.

    Elements are drawn in list order centered on their (x%, y%) anchor.  QR
    elements encode ``qr_payload`` or, when it is None, draw a placeholder of
    identical size so both passes of a two-phase render share one layout.
    """

    loader = background_loader or load_background
    image = _canvas(template, scale, loader)
    draw = ImageDraw.Draw(image)
    width_px, height_px = image.size

    for element in template.elements:
        cx = element.x / 100.0 * width_px
        cy = element.y / 100.0 * height_px
        if element.kind is ElementKind.TEXT:
            _draw_text(draw, element, element.content, (cx, cy), scale)
        elif element.kind is ElementKind.FIELD:
            _draw_text(draw, element, resolve_field(FieldKey.parse(element.content)), (cx, cy), scale)
        elif element.kind is ElementKind.QR:
            edge = max(element.font_size * scale, 1)
            left = int(round(cx - edge / 2))
            top = int(round(cy - edge / 2))
            box = (left, top, left + edge - 1, top + edge - 1)
            if qr_payload:
                image.paste(encode_qr(qr_payload, edge), (left, top))
            else:
                _draw_qr_placeholder(draw, box, scale)

    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()
