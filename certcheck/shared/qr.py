from __future__ import annotations

import cv2
import numpy as np
import qrcode
from PIL import Image

from .errors import DecodeError

QR_MARGIN_MODULES = 1


def encode_qr(payload: str, size_px: int) -> Image.Image:
    """Return a black-on-white QR code for payload scaled to size_px square."""

    if not payload:
        raise ValueError("QR payload must not be empty")
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=QR_MARGIN_MODULES,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    img = img.convert("RGB")
    size_px = max(int(size_px), 1)
    return img.resize((size_px, size_px), Image.NEAREST)


def _as_frame(image) -> np.ndarray:
    if isinstance(image, np.ndarray):
        return image
    if isinstance(image, Image.Image):
        rgb = np.array(image.convert("RGB"))
        return cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR)
    if isinstance(image, (bytes, bytearray)):
        buffer = np.frombuffer(bytes(image), dtype=np.uint8)
        frame = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        if frame is None:
            raise DecodeError("Image data could not be decoded.")
        return frame
    raise TypeError(f"unsupported image type {type(image).__name__}")


class QRDecoder:
    """Decode the first QR code in a frame with OpenCV."""

    def __init__(self):
        self.detector = cv2.QRCodeDetector()

    def __call__(self, image) -> str:
        frame = _as_frame(image)
        data, _, _ = self.detector.detectAndDecode(frame)
        if not data:
            raise DecodeError("No QR code found in image.")
        return data


def decode_qr(image) -> str:
    """Decode a QR code from a BGR frame, a PIL image or encoded image bytes."""
    return QRDecoder()(image)
