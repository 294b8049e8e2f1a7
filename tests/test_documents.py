from io import BytesIO

import pytest
from PIL import Image
from PyPDF2 import PdfReader

from certcheck.services.documents import combine_images_to_pdf


pytestmark = pytest.mark.smoke


def _png(color):
    buffer = BytesIO()
    Image.new("RGB", (80, 60), color).save(buffer, format="PNG")
    return buffer.getvalue()


def test_no_images_means_no_document():
    assert combine_images_to_pdf([], 400, 300) == b""


def test_one_page_per_image_at_template_size():
    pdf = combine_images_to_pdf([_png("red"), _png("blue")], 400, 300)

    reader = PdfReader(BytesIO(pdf))
    assert len(reader.pages) == 2
    for page in reader.pages:
        assert (float(page.mediabox.width), float(page.mediabox.height)) == (400.0, 300.0)
