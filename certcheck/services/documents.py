from __future__ import annotations

from io import BytesIO
from typing import Iterable

from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas


def combine_images_to_pdf(images: Iterable[bytes], width: float, height: float) -> bytes:
    """Concatenate PNG images into one PDF, one page per image.

    Every page is ``width`` x ``height`` points and the image is stretched to
    fill it, matching the template's logical canvas.
    """

    buffer = BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(width, height))
    pages = 0
    for data in images:
        pdf.setPageSize((width, height))
        pdf.drawImage(ImageReader(BytesIO(data)), 0, 0, width=width, height=height)
        pdf.showPage()
        pages += 1
    if not pages:
        return b""
    pdf.save()
    return buffer.getvalue()
