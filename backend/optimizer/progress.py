"""Lifecycle of one conversion job as an observable state machine.

A tracker starts in ``preparing`` and only moves forward:

    preparing -> uploading -> optimizing -> downloading -> done

``cancelled`` and ``failed`` are reachable from every non-terminal stage.
Stages may be skipped but never revisited, and each entered stage is
published exactly once, so subscribers can tell "entered optimizing" apart
from "still optimizing". ``uploading`` and ``downloading`` carry a progress
fraction; ``optimizing`` is indeterminate.

Trackers are single-use: create one per job.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union

from optimizer.errors import Cancelled

logger = logging.getLogger("optimizer.progress")


class ProcessingStage(str, Enum):
    PREPARING = "preparing"
    UPLOADING = "uploading"
    OPTIMIZING = "optimizing"
    DOWNLOADING = "downloading"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStage.DONE, ProcessingStage.CANCELLED, ProcessingStage.FAILED)

    @property
    def has_fraction(self) -> bool:
        return self in (ProcessingStage.UPLOADING, ProcessingStage.DOWNLOADING)


_FORWARD = [
    ProcessingStage.PREPARING,
    ProcessingStage.UPLOADING,
    ProcessingStage.OPTIMIZING,
    ProcessingStage.DOWNLOADING,
]


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class StageChanged:
    stage: ProcessingStage


@dataclass(frozen=True)
class ProgressUpdated:
    stage: ProcessingStage
    fraction: float


@dataclass(frozen=True)
class Failed:
    error: BaseException

    @property
    def message(self) -> str:
        return getattr(self.error, "message", None) or str(self.error)


@dataclass(frozen=True)
class Completed:
    artifact: Any


ProgressEvent = Union[StageChanged, ProgressUpdated, Failed, Completed]


@dataclass(frozen=True)
class ProgressSnapshot:
    stage: ProcessingStage
    fraction: Optional[float]
    is_converting: bool


class CancellationToken:
    """Checked by codecs between pages, frames and chunks."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled()


class ProgressTracker:
    def __init__(self, token: Optional[CancellationToken] = None):
        self._lock = threading.RLock()
        self._subscribers: list[Callable[[ProgressEvent], None]] = []
        self._stage = ProcessingStage.PREPARING
        self._fraction: Optional[float] = 0.0
        self._entered: list[ProcessingStage] = [ProcessingStage.PREPARING]
        self.token = token or CancellationToken()
        self.error: Optional[BaseException] = None
        self.artifact: Any = None

    @property
    def stage(self) -> ProcessingStage:
        return self._stage

    @property
    def fraction(self) -> Optional[float]:
        return self._fraction

    @property
    def is_converting(self) -> bool:
        return not self._stage.is_terminal

    @property
    def stages(self) -> list[ProcessingStage]:
        """Every stage entered so far, in order."""
        with self._lock:
            return list(self._entered)

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            return ProgressSnapshot(self._stage, self._fraction, self.is_converting)

    def subscribe(self, callback: Callable[[ProgressEvent], None]) -> Callable[[], None]:
        """Register ``callback`` for future events. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, event: ProgressEvent) -> None:
        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception:
                logger.exception("Progress subscriber %r failed on %s", cb, event)

    def _enter(self, stage: ProcessingStage, fraction: Optional[float]) -> None:
        self._stage = stage
        self._fraction = fraction
        self._entered.append(stage)
        self._publish(StageChanged(stage))

    def advance(self, stage: ProcessingStage) -> bool:
        """Move forward to ``stage``. Returns False when already there."""
        with self._lock:
            if self._stage.is_terminal:
                raise InvalidTransition(f"Job already {self._stage.value}")
            if stage not in _FORWARD:
                raise InvalidTransition(f"Use complete/fail/cancel to enter {stage.value}")
            if stage is self._stage:
                return False
            if _FORWARD.index(stage) < _FORWARD.index(self._stage):
                raise InvalidTransition(f"Cannot go back from {self._stage.value} to {stage.value}")
            self._enter(stage, 0.0 if stage.has_fraction else None)
            return True

    def update(self, fraction: float) -> None:
        """Report progress within ``uploading`` or ``downloading``."""
        with self._lock:
            if not self._stage.has_fraction:
                raise InvalidTransition(f"{self._stage.value} carries no progress fraction")
            if not 0.0 <= fraction <= 1.0:
                raise ValueError(f"Progress fraction out of range: {fraction}")
            if fraction == self._fraction:
                return
            self._fraction = fraction
            self._publish(ProgressUpdated(self._stage, fraction))

    def complete(self, artifact: Any) -> None:
        with self._lock:
            if self._stage is ProcessingStage.CANCELLED:
                raise Cancelled()
            if self._stage.is_terminal:
                raise InvalidTransition(f"Job already {self._stage.value}")
            self.artifact = artifact
            self._enter(ProcessingStage.DONE, 1.0)
            self._publish(Completed(artifact))

    def fail(self, error: BaseException) -> bool:
        """Enter ``failed``. Returns False if the job had already ended."""
        with self._lock:
            if self._stage.is_terminal:
                logger.debug("Ignoring failure after %s: %s", self._stage.value, error)
                return False
            self.error = error
            self._enter(ProcessingStage.FAILED, self._fraction)
            self._publish(Failed(error))
            return True

    def cancel(self) -> bool:
        """Enter ``cancelled`` and signal the running codec. False if the job had already ended."""
        with self._lock:
            if self._stage.is_terminal:
                return False
            self.token.cancel()
            self._enter(ProcessingStage.CANCELLED, self._fraction)
            return True


async def run_cancellable(token: CancellationToken, func: Callable, *args):
    """Run ``func`` in a worker thread that checks ``token``.

    If the awaiting task is cancelled the token is set and the worker is
    waited for, so it never outlives the caller's resources.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        token.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Worker stopped after cancellation: %s", task.exception())
        raise
