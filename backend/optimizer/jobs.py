"""Conversion jobs as seen by callers: convert, then record the result in history."""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from optimizer import config
from optimizer.conversion import Artifact, ConversionService
from optimizer.errors import OptimizerError
from optimizer.formats import ConversionFormat, FileKind, FileReference
from optimizer.history import HistoryItem, HistoryStore
from optimizer.options import ConversionOptions, Preset
from optimizer.progress import ProcessingStage, ProgressTracker

logger = logging.getLogger("optimizer.jobs")


@dataclass
class Job:
    id: str
    sources: list[FileReference]
    target: ConversionFormat
    preset: Preset
    options: ConversionOptions
    merge: bool = False
    tracker: ProgressTracker = field(default_factory=ProgressTracker)
    artifact: Optional[Artifact] = None
    history_id: Optional[str] = None
    # Uploaded copies owned by the job, deleted once it ends
    uploads: list[Path] = field(default_factory=list)
    # time.monotonic() when the job ended
    finished_at: Optional[float] = None

    @property
    def file_name(self) -> str:
        return self.sources[0].name if self.sources else ""

    @property
    def original_size(self) -> int:
        return sum(s.size for s in self.sources)

    def to_dict(self) -> dict:
        snap = self.tracker.snapshot()
        error = self.tracker.error
        return {
            "job_id": self.id,
            "file_name": self.file_name,
            "file_count": len(self.sources),
            "target": self.target.value,
            "preset": self.preset.value,
            "stage": snap.stage.value,
            "fraction": snap.fraction,
            "is_converting": snap.is_converting,
            "error": getattr(error, "message", None) or (str(error) if error else None),
            "original_size": self.original_size,
            "artifact": None if self.artifact is None else {
                "file_name": self.artifact.file_name,
                "size": self.artifact.size,
                "media_type": self.artifact.media_type,
                "page_count": self.artifact.page_count,
                "is_archive": self.artifact.is_archive,
            },
            "history_id": self.history_id,
        }


class JobManager:
    """Keeps jobs by id, runs them and appends a HistoryItem for each one that completes.

    Finished jobs are dropped ``retention`` seconds after they end, together
    with their artifact bytes.
    """

    def __init__(self, service: ConversionService, history: HistoryStore, retention: Optional[float] = None):
        self.service = service
        self.history = history
        self.retention = config.JOB_RETENTION_SECONDS if retention is None else retention
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(
        self,
        sources: list[FileReference],
        target: ConversionFormat,
        preset: Preset,
        options: ConversionOptions,
        merge: bool = False,
        uploads: Optional[list[Path]] = None,
    ) -> Job:
        job = Job(
            id=str(uuid.uuid4()),
            sources=list(sources),
            target=target,
            preset=preset,
            options=options,
            merge=merge,
            uploads=list(uploads or []),
        )
        with self._lock:
            self._evict_expired()
            self._jobs[job.id] = job
        logger.info("Job %s created: %s file(s) -> %s", job.id, len(job.sources), target.value)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            self._evict_expired()
            return self._jobs.get(job_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _evict_expired(self) -> None:
        now = time.monotonic()
        expired = [
            job_id for job_id, job in self._jobs.items()
            if job.finished_at is not None and now - job.finished_at >= self.retention
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.info("Dropped %s expired job(s)", len(expired))

    def cancel(self, job_id: str) -> bool:
        job = self.get(job_id)
        if job is None:
            return False
        return job.tracker.cancel()

    def forget(self, job_id: str) -> bool:
        """Drop a finished job and its artifact. Running jobs are kept."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.tracker.is_converting:
                return False
            del self._jobs[job_id]
            return True

    async def execute(self, job: Job) -> Artifact:
        """Run ``job`` to completion. Errors propagate; the tracker records them too."""
        try:
            if job.merge and all(s.kind is FileKind.DOCUMENT for s in job.sources):
                artifact = await self.service.merge_pdfs(job.sources, job.options, job.tracker)
            elif job.merge:
                artifact = await self.service.merge_to_document(job.sources, job.options, job.tracker)
            else:
                artifact = await self.service.convert(job.sources[0], job.target, job.options, job.tracker)
        finally:
            _discard(job.uploads)
            job.finished_at = time.monotonic()

        job.artifact = artifact
        if job.tracker.stage is ProcessingStage.DONE:
            item = HistoryItem(
                file_name=job.file_name if not job.merge else artifact.file_name,
                original_size=job.original_size,
                compressed_size=artifact.size,
                preset_used=job.preset,
            )
            self.history.append(item)
            job.history_id = item.id
        return artifact

    async def run(self, job: Job) -> None:
        """Background entry point: failures end up on the tracker, not the caller."""
        try:
            await self.execute(job)
        except OptimizerError as e:
            logger.info("Job %s ended in %s: %s", job.id, job.tracker.stage.value, e.message)


def _discard(paths: list[Path]) -> None:
    for p in paths:
        try:
            p.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not delete upload %s: %s", p, e)
