"""PDF rasterizing, recompression and assembly with PyMuPDF; office rendering with LibreOffice."""
import io
import logging
import zipfile
from pathlib import Path
from typing import Optional

import fitz
from PIL import Image

from optimizer import config
from optimizer.conversion.images import encode_image, encode_multipage_tiff, load_image, quality_percent
from optimizer.conversion.models import CodecOutput
from optimizer.conversion.process import run_codec
from optimizer.conversion.resize import fit_within, flatten_alpha, has_alpha
from optimizer.errors import CodecFailure, MultiPageUnsupported
from optimizer.formats import ConversionFormat
from optimizer.options import ConversionOptions, PagePolicy
from optimizer.progress import CancellationToken

logger = logging.getLogger("optimizer.documents")


def raster_dpi(quality: float) -> int:
    """Rasterization DPI grows linearly with quality, from 72 up to MAX_RASTER_DPI."""
    return int(round(72 + quality * (config.MAX_RASTER_DPI - 72)))


def open_pdf(path: Path) -> fitz.Document:
    try:
        doc = fitz.open(path)
    except (RuntimeError, ValueError) as e:
        raise CodecFailure(f"Could not open PDF {path.name}: {e}", e) from e
    if doc.needs_pass:
        doc.close()
        raise CodecFailure(f"{path.name} is password protected")
    return doc


def render_page(page: fitz.Page, dpi: int, max_dimension: int) -> Image.Image:
    pix = page.get_pixmap(dpi=dpi, alpha=False)
    img = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
    return fit_within(img, max_dimension)


def pack_pages(pages: list[tuple[str, bytes]]) -> bytes:
    """Zip of per-page files, in page order."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in pages:
            zf.writestr(name, data)
    return buf.getvalue()


def rasterize_pdf(
    src: Path,
    out_dir: Path,
    stem: str,
    target: ConversionFormat,
    options: ConversionOptions,
    token: CancellationToken,
) -> CodecOutput:
    """Render every page to ``target``.

    Multi-page targets get one container. Single-page targets get a plain
    image for a one-page source; for longer sources ``options.page_policy``
    decides between a zip of per-page images and MultiPageUnsupported.
    """
    dpi = raster_dpi(options.quality)
    with open_pdf(src) as doc:
        page_count = doc.page_count
        if page_count == 0:
            raise CodecFailure(f"{src.name} has no pages")
        if page_count > 1 and not target.supports_multi_page and options.page_policy is PagePolicy.REJECT:
            raise MultiPageUnsupported(target, page_count)

        if target.supports_multi_page:
            images = []
            for page in doc:
                token.raise_if_cancelled()
                images.append(render_page(page, dpi, options.max_dimension))
            out_path = out_dir / f"{stem}.{target.extension}"
            out_path.write_bytes(encode_multipage_tiff(images))
            logger.info("Rendered %s pages of %s at %s dpi into %s", page_count, src.name, dpi, out_path.name)
            return CodecOutput(out_path, page_count=page_count)

        rendered: list[tuple[str, bytes]] = []
        for page in doc:
            token.raise_if_cancelled()
            img = render_page(page, dpi, options.max_dimension)
            name = f"page_{page.number + 1:03d}.{target.extension}"
            rendered.append((name, encode_image(img, target, options.quality)))

    if page_count == 1:
        out_path = out_dir / f"{stem}.{target.extension}"
        out_path.write_bytes(rendered[0][1])
        return CodecOutput(out_path)
    out_path = out_dir / f"{stem}_pages.zip"
    out_path.write_bytes(pack_pages(rendered))
    logger.info("Rendered %s pages of %s at %s dpi into %s", page_count, src.name, dpi, out_path.name)
    return CodecOutput(out_path, page_count=page_count, is_archive=True)


def _recompress_image(doc: fitz.Document, xref: int, options: ConversionOptions) -> Optional[bytes]:
    """JPEG re-encode of one embedded image, or None when it would not shrink."""
    try:
        base = doc.extract_image(xref)
    except (RuntimeError, ValueError) as e:
        logger.debug("Skipping image xref %s: %s", xref, e)
        return None
    if not base or not base.get("image"):
        return None
    original = base["image"]
    try:
        img = Image.open(io.BytesIO(original))
        img.load()
    except (OSError, ValueError) as e:
        # JBIG2, CCITT and friends stay as they are
        logger.debug("Leaving undecodable image xref %s (%s): %s", xref, base.get("ext"), e)
        return None
    img = fit_within(img, options.max_dimension)
    if img.mode not in ("RGB", "L"):
        img = flatten_alpha(img)
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality_percent(options.quality), optimize=True)
    data = buf.getvalue()
    return data if len(data) < len(original) else None


def compress_pdf(
    src: Path,
    out_path: Path,
    options: ConversionOptions,
    token: CancellationToken,
) -> CodecOutput:
    """Downsample and re-encode embedded images, then rewrite the file compactly."""
    replaced = 0
    with open_pdf(src) as doc:
        seen: set[int] = set()
        for page in doc:
            token.raise_if_cancelled()
            for info in page.get_images(full=True):
                xref, smask = info[0], info[1]
                if xref in seen:
                    continue
                seen.add(xref)
                if smask:
                    # Soft-masked images would lose their transparency as JPEG
                    continue
                data = _recompress_image(doc, xref, options)
                if data is not None:
                    page.replace_image(xref, stream=data)
                    replaced += 1
        token.raise_if_cancelled()
        try:
            out_path.write_bytes(doc.tobytes(garbage=4, deflate=True, clean=True))
        except (RuntimeError, ValueError) as e:
            raise CodecFailure(f"Could not write PDF: {e}", e) from e
        page_count = doc.page_count
    logger.info("Recompressed %s of %s images in %s", replaced, len(seen), src.name)
    return CodecOutput(out_path, page_count=page_count)


def images_to_pdf(
    sources: list[Path],
    out_path: Path,
    options: ConversionOptions,
    token: CancellationToken,
) -> CodecOutput:
    """One page per image, in the given order. Page size follows each image's DPI."""
    doc = fitz.open()
    try:
        for src in sources:
            token.raise_if_cancelled()
            img = fit_within(load_image(src), options.max_dimension)
            dpi_info = img.info.get("dpi")
            dpi = float(dpi_info[0]) if dpi_info and dpi_info[0] else float(config.DEFAULT_IMAGE_DPI)
            width_pt = img.width * 72.0 / dpi
            height_pt = img.height * 72.0 / dpi
            target = ConversionFormat.PNG if has_alpha(img) else ConversionFormat.JPG
            page = doc.new_page(width=width_pt, height=height_pt)
            page.insert_image(page.rect, stream=encode_image(img, target, options.quality))
        token.raise_if_cancelled()
        out_path.write_bytes(doc.tobytes(garbage=3, deflate=True))
        page_count = doc.page_count
    except (RuntimeError, ValueError) as e:
        raise CodecFailure(f"Could not build PDF: {e}", e) from e
    finally:
        doc.close()
    logger.info("Merged %s images into %s", page_count, out_path.name)
    return CodecOutput(out_path, page_count=page_count)



def merge_pdfs(sources: list[Path], out_path: Path, token: CancellationToken) -> CodecOutput:
    """Append every page of ``sources`` to one PDF, documents in the given order."""
    merged = fitz.open()
    try:
        for src in sources:
            token.raise_if_cancelled()
            with open_pdf(src) as doc:
                merged.insert_pdf(doc)
        token.raise_if_cancelled()
        out_path.write_bytes(merged.tobytes(garbage=3, deflate=True))
        page_count = merged.page_count
    except (RuntimeError, ValueError) as e:
        raise CodecFailure(f"Could not merge PDFs: {e}", e) from e
    finally:
        merged.close()
    logger.info("Merged %s PDFs (%s pages) into %s", len(sources), page_count, out_path.name)
    return CodecOutput(out_path, page_count=page_count)

async def office_to_pdf(src: Path, out_dir: Path, token: CancellationToken) -> Path:
    """Render a document, presentation or spreadsheet to PDF with headless LibreOffice."""
    out_dir.mkdir(parents=True, exist_ok=True)
    profile = out_dir / "lo-profile"
    cmd = [
        config.SOFFICE_BIN,
        f"-env:UserInstallation={profile.resolve().as_uri()}",
        "--headless", "--norestore",
        "--convert-to", "pdf",
        "--outdir", str(out_dir),
        str(src),
    ]
    await run_codec(cmd, token)
    pdf_path = out_dir / f"{src.stem}.pdf"
    if not pdf_path.is_file():
        raise CodecFailure(f"LibreOffice produced no PDF for {src.name}")
    logger.info("Rendered %s to PDF", src.name)
    return pdf_path
