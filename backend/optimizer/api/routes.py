"""API routes for analysis, conversion jobs and history."""
import logging
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import Response

from optimizer import config
from optimizer.analysis import AnalysisService
from optimizer.conversion import ConversionService
from optimizer.errors import CodecFailure, OptimizerError, OptionsOutOfRange
from optimizer.formats import (
    ConversionFormat,
    FileKind,
    FileReference,
    available_formats,
    is_multi_file_merge_eligible,
    is_pdf,
)
from optimizer.history import HistoryStore
from optimizer.jobs import JobManager
from optimizer.options import (
    DEFAULT_OPTIONS,
    PRESET_DESCRIPTIONS,
    PRESET_OPTIONS,
    ConversionOptions,
    PagePolicy,
    Preset,
    VideoQualityTier,
    resolve_preset,
)

logger = logging.getLogger("optimizer.api")
router = APIRouter(prefix="/api", tags=["optimizer"])

UPLOAD_DIR = config.WORK_DIR / "uploads"


def get_jobs(request: Request) -> JobManager:
    return request.app.state.jobs


def get_history(request: Request) -> HistoryStore:
    return request.app.state.history


def get_analysis(request: Request) -> AnalysisService:
    return request.app.state.analysis


def _content_disposition(file_name: str) -> str:
    """Attachment header with an ASCII fallback name and the UTF-8 name (RFC 5987)."""
    fallback = file_name.encode("ascii", "ignore").decode().replace('"', "").replace("\\", "")
    if not Path(fallback).stem.strip("_ "):
        fallback = "download" + Path(file_name).suffix.encode("ascii", "ignore").decode()
    quoted = quote(file_name, safe="")
    if quoted == file_name:
        return f'attachment; filename="{file_name}"'
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quoted}"


def _http_error(e: OptimizerError) -> HTTPException:
    if isinstance(e, OptionsOutOfRange):
        return HTTPException(422, e.message)
    if isinstance(e, CodecFailure):
        return HTTPException(500, e.message)
    return HTTPException(400, e.message)


async def _save_upload(file: UploadFile) -> Path:
    """Stream an upload to UPLOAD_DIR under a unique name."""
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    name = Path(file.filename or "upload").name
    dest = UPLOAD_DIR / f"{uuid.uuid4()}_{name}"
    max_mb = config.MAX_UPLOAD_SIZE_MB
    try:
        total = 0
        with open(dest, "wb") as f:
            while chunk := await file.read(config.READ_CHUNK_SIZE):
                total += len(chunk)
                if total > config.MAX_UPLOAD_SIZE_BYTES:
                    raise HTTPException(413, f"File too large (max {max_mb} MB)")
                f.write(chunk)
    except HTTPException:
        dest.unlink(missing_ok=True)
        raise
    except OSError as e:
        logger.exception("Upload failed: %s", e)
        dest.unlink(missing_ok=True)
        raise HTTPException(500, "Upload failed")
    return dest


def _options_from_query(
    preset: str,
    quality: Optional[float],
    video_quality: Optional[VideoQualityTier],
    gif_frame_rate: Optional[int],
    max_dimension: Optional[int],
    gif_size: Optional[int],
    max_gif_frames: Optional[int],
    target_size_bytes: Optional[int],
    page_policy: Optional[PagePolicy],
) -> tuple[Preset, ConversionOptions]:
    """Preset options with any explicit query values laid over them."""
    overrides = dict(
        quality=quality,
        video_quality=video_quality,
        gif_frame_rate=gif_frame_rate,
        max_dimension=max_dimension,
        gif_size=gif_size,
        max_gif_frames=max_gif_frames,
        target_size_bytes=target_size_bytes,
        page_policy=page_policy,
    )
    try:
        name = Preset(preset)
    except ValueError:
        raise HTTPException(400, f"Unknown preset: {preset}")
    custom = DEFAULT_OPTIONS.with_overrides(**overrides) if name is Preset.CUSTOM else None
    try:
        options = resolve_preset(name, custom).with_overrides(**overrides).validate()
    except OptimizerError as e:
        raise _http_error(e)
    return name, options


def _parse_format(value: str) -> ConversionFormat:
    try:
        return ConversionFormat(value.strip().lower().replace("jpeg", "jpg"))
    except ValueError:
        raise HTTPException(400, f"Unknown format: {value}")


def _analysis_to_dict(ref: FileReference, result) -> dict:
    return {
        "file_name": ref.name,
        "size": ref.size,
        "kind": ref.kind.value,
        "page_count": result.page_count,
        "image_count": result.image_count,
        "image_density": result.image_density.value,
        "estimated_savings": result.estimated_savings.value,
        "estimated_savings_percent": result.estimated_savings.percent,
        "is_already_optimized": result.is_already_optimized,
        "original_dpi": result.original_dpi,
        "available_formats": [f.value for f in available_formats(ref.kind)],
    }


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/formats")
def get_formats(kind: Optional[FileKind] = Query(None, description="Only formats reachable from this kind")):
    if kind is not None:
        return {"kind": kind.value, "formats": [f.value for f in available_formats(kind)]}
    return {k.value: [f.value for f in available_formats(k)] for k in FileKind}


@router.get("/presets")
def get_presets():
    """Named option bundles; custom takes its options from the request."""
    result = {}
    for preset in Preset:
        options = PRESET_OPTIONS.get(preset)
        result[preset.value] = {
            "description": PRESET_DESCRIPTIONS[preset],
            "options": None if options is None else {
                "quality": options.quality,
                "video_quality": options.video_quality.value,
                "max_dimension": options.max_dimension,
                "target_size_bytes": options.target_size_bytes,
            },
        }
    return result


@router.post("/analyze")
async def analyze_file(
    file: UploadFile = File(...),
    analysis: AnalysisService = Depends(get_analysis),
):
    """Predict how much an uploaded file can shrink."""
    dest = await _save_upload(file)
    try:
        ref = FileReference.from_path(dest, name=file.filename)
        result = await analysis.analyze(ref)
        return _analysis_to_dict(ref, result)
    except OptimizerError as e:
        raise _http_error(e)
    finally:
        dest.unlink(missing_ok=True)


@router.post("/jobs")
async def create_job(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    target_format: str = Query(..., alias="format", description="Target format, e.g. pdf, jpg, mp4"),
    preset: str = Query(Preset.QUALITY.value),
    quality: Optional[float] = Query(None),
    video_quality: Optional[VideoQualityTier] = Query(None),
    gif_frame_rate: Optional[int] = Query(None),
    max_dimension: Optional[int] = Query(None),
    gif_size: Optional[int] = Query(None),
    max_gif_frames: Optional[int] = Query(None),
    target_size_bytes: Optional[int] = Query(None),
    page_policy: Optional[PagePolicy] = Query(None),
    jobs: JobManager = Depends(get_jobs),
):
    """Upload one file and start converting it in the background. Poll /api/jobs/{job_id}."""
    target = _parse_format(target_format)
    name, options = _options_from_query(
        preset, quality, video_quality, gif_frame_rate, max_dimension,
        gif_size, max_gif_frames, target_size_bytes, page_policy,
    )
    dest = await _save_upload(file)
    ref = FileReference.from_path(dest, name=file.filename)
    try:
        ConversionService.check_legal(ref.kind, target)
    except OptimizerError as e:
        dest.unlink(missing_ok=True)
        raise _http_error(e)

    job = jobs.create([ref], target, name, options, uploads=[dest])
    background_tasks.add_task(jobs.run, job)
    return job.to_dict()


@router.post("/jobs/merge")
async def create_merge_job(
    background_tasks: BackgroundTasks,
    files: list[UploadFile] = File(...),
    preset: str = Query(Preset.QUALITY.value),
    quality: Optional[float] = Query(None),
    max_dimension: Optional[int] = Query(None),
    jobs: JobManager = Depends(get_jobs),
):
    """Combine several images, or several PDFs, into one PDF in upload order."""
    if len(files) > config.MAX_MERGE_FILES:
        raise HTTPException(400, f"At most {config.MAX_MERGE_FILES} files can be merged at once")
    name, options = _options_from_query(preset, quality, None, None, max_dimension, None, None, None, None)
    saved: list[Path] = []
    try:
        for f in files:
            saved.append(await _save_upload(f))
        refs = [FileReference.from_path(p, name=f.filename) for p, f in zip(saved, files)]
    except HTTPException:
        for p in saved:
            p.unlink(missing_ok=True)
        raise
    all_pdfs = len(refs) > 1 and all(r.kind is FileKind.DOCUMENT and is_pdf(r.path) for r in refs)
    if not all_pdfs and not is_multi_file_merge_eligible(ConversionFormat.PDF, len(refs), [r.kind for r in refs]):
        for p in saved:
            p.unlink(missing_ok=True)
        raise HTTPException(400, "Merging needs at least two image files or at least two PDFs")

    job = jobs.create(refs, ConversionFormat.PDF, name, options, merge=True, uploads=saved)
    background_tasks.add_task(jobs.run, job)
    return job.to_dict()


@router.get("/jobs/{job_id}")
def get_job(job_id: str, jobs: JobManager = Depends(get_jobs)):
    job = jobs.get(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return job.to_dict()


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, jobs: JobManager = Depends(get_jobs)):
    job = jobs.get(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    cancelled = jobs.cancel(job_id)
    return {"cancelled": cancelled, **job.to_dict()}


@router.get("/jobs/{job_id}/artifact")
def download_artifact(job_id: str, jobs: JobManager = Depends(get_jobs)):
    job = jobs.get(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    if job.artifact is None:
        raise HTTPException(404, "Artifact not ready")
    artifact = job.artifact
    return Response(
        content=artifact.data,
        media_type=artifact.media_type,
        headers={"Content-Disposition": _content_disposition(artifact.file_name)},
    )


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str, jobs: JobManager = Depends(get_jobs)):
    """Drop a finished job and free its artifact."""
    job = jobs.get(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    if not jobs.forget(job_id):
        raise HTTPException(409, "Job is still running; cancel it first")
    return {"ok": True}


@router.get("/history")
def list_history(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    history: HistoryStore = Depends(get_history),
):
    """Completed conversions, most recent first."""
    items = history.recent(limit) if limit else history.all()
    return {"items": [i.to_dict() for i in items]}


@router.get("/history/stats")
def history_stats(history: HistoryStore = Depends(get_history)):
    return history.stats()


@router.delete("/history/{item_id}")
def delete_history_item(item_id: str, history: HistoryStore = Depends(get_history)):
    if not history.remove(item_id):
        raise HTTPException(404, "History item not found")
    return {"ok": True}


@router.delete("/history")
def clear_history(history: HistoryStore = Depends(get_history)):
    removed = history.clear()
    return {"ok": True, "removed": removed}
