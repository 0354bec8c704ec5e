import pytest

from optimizer.errors import Cancelled
from optimizer.progress import (
    CancellationToken,
    Completed,
    Failed,
    InvalidTransition,
    ProcessingStage as S,
    ProgressTracker,
    ProgressUpdated,
    StageChanged,
)


@pytest.fixture
def tracker():
    return ProgressTracker()


@pytest.fixture
def events(tracker):
    received = []
    tracker.subscribe(received.append)
    return received


def test_starts_preparing(tracker):
    snap = tracker.snapshot()
    assert snap.stage is S.PREPARING
    assert snap.is_converting


def test_happy_path_publishes_each_stage_once(tracker, events):
    tracker.advance(S.UPLOADING)
    tracker.update(0.5)
    tracker.update(0.5)
    tracker.update(1.0)
    tracker.advance(S.OPTIMIZING)
    assert tracker.advance(S.OPTIMIZING) is False
    tracker.advance(S.DOWNLOADING)
    tracker.update(1.0)
    tracker.complete("artifact")

    assert events == [
        StageChanged(S.UPLOADING),
        ProgressUpdated(S.UPLOADING, 0.5),
        ProgressUpdated(S.UPLOADING, 1.0),
        StageChanged(S.OPTIMIZING),
        StageChanged(S.DOWNLOADING),
        ProgressUpdated(S.DOWNLOADING, 1.0),
        StageChanged(S.DONE),
        Completed("artifact"),
    ]
    assert tracker.stages == [S.PREPARING, S.UPLOADING, S.OPTIMIZING, S.DOWNLOADING, S.DONE]
    assert not tracker.is_converting


def test_optimizing_has_no_fraction(tracker):
    tracker.advance(S.OPTIMIZING)
    assert tracker.fraction is None
    with pytest.raises(InvalidTransition):
        tracker.update(0.3)


def test_fraction_range(tracker):
    tracker.advance(S.UPLOADING)
    with pytest.raises(ValueError):
        tracker.update(1.5)
    with pytest.raises(ValueError):
        tracker.update(-0.1)


def test_no_going_back(tracker):
    tracker.advance(S.OPTIMIZING)
    with pytest.raises(InvalidTransition):
        tracker.advance(S.UPLOADING)


def test_terminal_stages_need_their_own_calls(tracker):
    with pytest.raises(InvalidTransition):
        tracker.advance(S.DONE)


@pytest.mark.parametrize("stage", [S.PREPARING, S.UPLOADING, S.OPTIMIZING, S.DOWNLOADING])
def test_cancel_from_any_running_stage(stage):
    tracker = ProgressTracker()
    if stage is not S.PREPARING:
        tracker.advance(stage)
    assert tracker.cancel() is True
    assert tracker.stage is S.CANCELLED
    assert tracker.token.cancelled
    assert tracker.cancel() is False


@pytest.mark.parametrize("stage", [S.PREPARING, S.UPLOADING, S.OPTIMIZING, S.DOWNLOADING])
def test_fail_from_any_running_stage(stage):
    tracker = ProgressTracker()
    received = []
    tracker.subscribe(received.append)
    if stage is not S.PREPARING:
        tracker.advance(stage)
    error = RuntimeError("disk full")
    assert tracker.fail(error) is True
    assert tracker.stage is S.FAILED
    assert tracker.error is error
    assert received[-1] == Failed(error)
    assert received[-1].message == "disk full"


def test_terminal_states_are_final(tracker):
    tracker.complete("a")
    assert tracker.cancel() is False
    assert tracker.fail(RuntimeError("late")) is False
    with pytest.raises(InvalidTransition):
        tracker.advance(S.UPLOADING)
    with pytest.raises(InvalidTransition):
        tracker.complete("b")
    assert tracker.stage is S.DONE


def test_complete_after_cancel_raises(tracker):
    tracker.cancel()
    with pytest.raises(Cancelled):
        tracker.complete("a")
    assert tracker.stage is S.CANCELLED


def test_failing_subscriber_does_not_break_others(tracker):
    received = []

    def broken(event):
        raise RuntimeError("boom")

    tracker.subscribe(broken)
    tracker.subscribe(received.append)
    tracker.advance(S.UPLOADING)
    assert received == [StageChanged(S.UPLOADING)]


def test_unsubscribe(tracker):
    received = []
    unsubscribe = tracker.subscribe(received.append)
    unsubscribe()
    tracker.advance(S.UPLOADING)
    assert received == []


def test_cancellation_token():
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    assert token.cancelled
    with pytest.raises(Cancelled):
        token.raise_if_cancelled()
