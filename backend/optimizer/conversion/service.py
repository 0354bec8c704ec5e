"""Conversion jobs: validation, staging, codec dispatch and progress reporting."""
import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from optimizer import config
from optimizer.conversion.documents import compress_pdf, images_to_pdf, merge_pdfs, office_to_pdf, rasterize_pdf
from optimizer.conversion.images import convert_image
from optimizer.conversion.models import Artifact, CodecOutput
from optimizer.conversion.video import make_gif, transcode
from optimizer.errors import (
    Cancelled,
    CodecFailure,
    MultiPageUnsupported,
    OptimizerError,
    UnsupportedConversion,
)
from optimizer.formats import ConversionFormat, FileKind, FileReference, is_pdf
from optimizer.options import DEFAULT_OPTIONS, ConversionOptions, PagePolicy
from optimizer.progress import CancellationToken, ProcessingStage, ProgressTracker, run_cancellable

logger = logging.getLogger("optimizer.service")

_RENDERED_KINDS = (FileKind.DOCUMENT, FileKind.PRESENTATION, FileKind.SPREADSHEET)


class ConversionService:
    """Runs one conversion per call, reporting through a ProgressTracker.

    Intermediate files live in a per-job temporary directory under
    ``work_dir`` that is removed however the job ends.
    """

    def __init__(self, work_dir: Optional[Path] = None):
        self.work_dir = Path(work_dir or config.WORK_DIR)
        self.work_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def check_legal(kind: FileKind, target: ConversionFormat) -> None:
        if not target.is_reachable_from(kind):
            raise UnsupportedConversion(kind, target)

    async def convert(
        self,
        source: FileReference,
        target: ConversionFormat,
        options: ConversionOptions = DEFAULT_OPTIONS,
        tracker: Optional[ProgressTracker] = None,
    ) -> Artifact:
        tracker = tracker or ProgressTracker()

        async def work(tmp: Path) -> Artifact:
            self.check_legal(source.kind, target)
            options.validate()
            if (
                source.page_count
                and source.page_count > 1
                and not target.supports_multi_page
                and options.page_policy is PagePolicy.REJECT
            ):
                raise MultiPageUnsupported(target, source.page_count)

            tracker.advance(ProcessingStage.UPLOADING)
            suffix = Path(source.name).suffix or source.path.suffix
            staged = tmp / f"input{suffix.lower()}"
            await run_cancellable(tracker.token, _copy_with_progress, [source.path], [staged], tracker)

            tracker.advance(ProcessingStage.OPTIMIZING)
            logger.info("Converting %s (%s) to %s", source.name, source.kind.value, target.value)
            output = await self._produce(staged, tmp, source.kind, target, options, tracker.token)

            tracker.advance(ProcessingStage.DOWNLOADING)
            data = await run_cancellable(tracker.token, _read_with_progress, output.path, tracker)
            ext = "zip" if output.is_archive else target.extension
            return Artifact(
                data=data,
                target=target,
                file_name=f"{source.stem}_optimized.{ext}",
                page_count=output.page_count,
                is_archive=output.is_archive,
            )

        return await self._run(tracker, work)

    async def merge_to_document(
        self,
        sources: list[FileReference],
        options: ConversionOptions = DEFAULT_OPTIONS,
        tracker: Optional[ProgressTracker] = None,
    ) -> Artifact:
        """Combine images into one PDF, one page per image in the given order."""

        def check(ref: FileReference) -> None:
            self.check_legal(ref.kind, ConversionFormat.PDF)
            if ref.kind is not FileKind.IMAGE:
                raise UnsupportedConversion(ref.kind, ConversionFormat.PDF)

        def produce(staged: list[Path], tmp: Path, token: CancellationToken) -> CodecOutput:
            return images_to_pdf(staged, tmp / "merged.pdf", options, token)

        return await self._merge(sources, options, tracker, check, produce, "images")

    async def merge_pdfs(
        self,
        sources: list[FileReference],
        options: ConversionOptions = DEFAULT_OPTIONS,
        tracker: Optional[ProgressTracker] = None,
    ) -> Artifact:
        """Append PDFs into one document, pages in the given order, then recompress it."""

        def check(ref: FileReference) -> None:
            if ref.kind is not FileKind.DOCUMENT:
                raise UnsupportedConversion(ref.kind, ConversionFormat.PDF)
            if not is_pdf(ref.path):
                raise OptimizerError(f"{ref.name} is not a PDF")

        def produce(staged: list[Path], tmp: Path, token: CancellationToken) -> CodecOutput:
            merged = merge_pdfs(staged, tmp / "merged.pdf", token)
            return compress_pdf(merged.path, tmp / "output.pdf", options, token)

        return await self._merge(sources, options, tracker, check, produce, "PDFs")

    async def _merge(self, sources, options, tracker, check, produce, noun: str) -> Artifact:
        tracker = tracker or ProgressTracker()

        async def work(tmp: Path) -> Artifact:
            if not sources:
                raise OptimizerError("No files to merge")
            if len(sources) > config.MAX_MERGE_FILES:
                raise OptimizerError(f"At most {config.MAX_MERGE_FILES} files can be merged at once")
            for ref in sources:
                check(ref)
            options.validate()

            tracker.advance(ProcessingStage.UPLOADING)
            staged = [
                tmp / f"input_{i:03d}{(Path(ref.name).suffix or ref.path.suffix).lower()}"
                for i, ref in enumerate(sources)
            ]
            await run_cancellable(tracker.token, _copy_with_progress, [r.path for r in sources], staged, tracker)

            tracker.advance(ProcessingStage.OPTIMIZING)
            logger.info("Merging %s %s into one PDF", len(sources), noun)
            output = await run_cancellable(tracker.token, produce, staged, tmp, tracker.token)

            tracker.advance(ProcessingStage.DOWNLOADING)
            data = await run_cancellable(tracker.token, _read_with_progress, output.path, tracker)
            return Artifact(
                data=data,
                target=ConversionFormat.PDF,
                file_name=f"{sources[0].stem}_merged.pdf",
                page_count=output.page_count,
            )

        return await self._run(tracker, work)

    async def _run(self, tracker: ProgressTracker, work) -> Artifact:
        """Run ``work`` inside a fresh job directory and settle the tracker."""
        tmp = Path(tempfile.mkdtemp(prefix="job-", dir=self.work_dir))
        try:
            artifact = await work(tmp)
            tracker.complete(artifact)
            logger.info("Job finished: %s (%s bytes)", artifact.file_name, artifact.size)
            return artifact
        except asyncio.CancelledError:
            tracker.cancel()
            raise
        except Cancelled:
            tracker.cancel()
            logger.info("Job cancelled")
            raise
        except OptimizerError as e:
            if tracker.token.cancelled:
                tracker.cancel()
                raise Cancelled() from e
            logger.warning("Job failed: %s", e.message)
            tracker.fail(e)
            raise
        except Exception as e:
            if tracker.token.cancelled:
                # cancel() raced a stage change or progress update
                tracker.cancel()
                raise Cancelled() from e
            logger.exception("Unexpected conversion error: %s", e)
            err = CodecFailure(f"Conversion failed: {e}", e)
            tracker.fail(err)
            raise err from e
        finally:
            shutil.rmtree(tmp, ignore_errors=True)
            if tmp.exists():
                logger.warning("Could not remove job directory %s", tmp)

    async def _produce(
        self,
        src: Path,
        tmp: Path,
        kind: FileKind,
        target: ConversionFormat,
        options: ConversionOptions,
        token: CancellationToken,
    ) -> CodecOutput:
        if kind is FileKind.IMAGE:
            if target is ConversionFormat.PDF:
                return await run_cancellable(token, images_to_pdf, [src], tmp / "output.pdf", options, token)
            out_path = tmp / f"output.{target.extension}"
            return await run_cancellable(token, convert_image, src, out_path, target, options, token)

        if kind is FileKind.VIDEO:
            out_path = tmp / f"output.{target.extension}"
            if target is ConversionFormat.GIF:
                return await make_gif(src, out_path, options, token)
            return await transcode(src, out_path, target, options, token)

        if kind in _RENDERED_KINDS:
            pdf = src if is_pdf(src) else await office_to_pdf(src, tmp / "rendered", token)
            token.raise_if_cancelled()
            if target is ConversionFormat.PDF:
                return await run_cancellable(token, compress_pdf, pdf, tmp / "output.pdf", options, token)
            return await run_cancellable(token, rasterize_pdf, pdf, tmp, "output", target, options, token)

        raise UnsupportedConversion(kind, target)


def _copy_with_progress(sources: list[Path], destinations: list[Path], tracker: ProgressTracker) -> None:
    """Copy files chunk by chunk, reporting the uploading fraction over their total size."""
    total = sum(p.stat().st_size for p in sources)
    done = 0
    for src, dst in zip(sources, destinations):
        with open(src, "rb") as fin, open(dst, "wb") as fout:
            while True:
                tracker.token.raise_if_cancelled()
                chunk = fin.read(config.READ_CHUNK_SIZE)
                if not chunk:
                    break
                fout.write(chunk)
                done += len(chunk)
                tracker.update(min(1.0, done / total))
    tracker.update(1.0)


def _read_with_progress(path: Path, tracker: ProgressTracker) -> bytes:
    total = path.stat().st_size
    parts = []
    read = 0
    with open(path, "rb") as f:
        while True:
            tracker.token.raise_if_cancelled()
            chunk = f.read(config.READ_CHUNK_SIZE)
            if not chunk:
                break
            parts.append(chunk)
            read += len(chunk)
            tracker.update(min(1.0, read / total))
    tracker.update(1.0)
    return b"".join(parts)
