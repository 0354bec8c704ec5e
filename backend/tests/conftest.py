"""Shared fixtures: sample files are generated on the fly with Pillow and PyMuPDF."""
import io
import os
import tempfile

# Keep scratch files and the default database out of the source tree
os.environ.setdefault("WORK_DIR", tempfile.mkdtemp(prefix="optimizer-tests-"))
os.environ.setdefault("DATABASE_URL", "sqlite://")

import fitz
import pytest
from PIL import Image

from optimizer.conversion import ConversionService
from optimizer.formats import FileReference
from optimizer.history import HistoryStore, create_history_engine


def noise_image(width, height, mode="RGB"):
    bands = len(mode)
    return Image.frombytes(mode, (width, height), os.urandom(width * height * bands))


def image_bytes(img, fmt="PNG", **kwargs):
    buf = io.BytesIO()
    img.save(buf, format=fmt, **kwargs)
    return buf.getvalue()


def write_pdf(path, pages=1, image=None, text="Quarterly report"):
    """A PDF with ``pages`` text pages; ``image`` (PNG bytes) is placed on the first page."""
    doc = fitz.open()
    for n in range(pages):
        page = doc.new_page(width=595, height=842)
        page.insert_text((72, 72), f"{text} - page {n + 1}", fontsize=14)
        if image is not None and n == 0:
            page.insert_image(fitz.Rect(72, 100, 272, 300), stream=image)
    doc.save(path)
    doc.close()
    return path


@pytest.fixture
def make_image(tmp_path):
    def _make(name="photo.png", size=(320, 240), color=(200, 40, 40), noise=False, fmt=None, **save_kwargs):
        path = tmp_path / name
        img = noise_image(*size) if noise else Image.new("RGB", size, color)
        img.save(path, format=fmt, **save_kwargs)
        return path

    return _make


@pytest.fixture
def make_pdf(tmp_path):
    def _make(name="report.pdf", pages=1, image=None):
        return write_pdf(tmp_path / name, pages=pages, image=image)

    return _make


@pytest.fixture
def ref():
    return FileReference.from_path


@pytest.fixture
def work_dir(tmp_path):
    d = tmp_path / "work"
    d.mkdir()
    return d


@pytest.fixture
def service(work_dir):
    return ConversionService(work_dir)


@pytest.fixture
def history():
    return HistoryStore(create_history_engine("sqlite://"))
