import pytest

from invoice_upload.models import UploadProgress, UploadStatus
from invoice_upload.services import status
from invoice_upload.services.status import ProgressTracker

S = UploadStatus


def test_transition_table():
    assert status.is_valid_transition(S.NOT_UPLOADED, S.PROCESSING_PDF)
    assert status.is_valid_transition(S.NOT_UPLOADED, S.COMPRESSING_IMAGE)
    assert status.is_valid_transition(S.AI_PROCESSING, S.COMPLETED)
    assert not status.is_valid_transition(S.COMPRESSING_IMAGE, S.PROCESSING_PDF)
    assert not status.is_valid_transition(S.NOT_UPLOADED, S.COMPLETED)
    assert status.next_statuses(S.COMPLETED) == []
    assert status.next_statuses(S.FAILED) == []


def test_every_processing_status_can_fail():
    for processing in status.PROCESSING_STATUSES:
        assert status.is_valid_transition(processing, S.FAILED)


def test_progress_for_status_uses_stage_weights():
    assert status.progress_for_status(S.PROCESSING_PDF, 50) == 10
    assert status.progress_for_status(S.COMPRESSING_IMAGE, 0) == 20
    assert status.progress_for_status(S.UPLOADING_TO_STORE, 100) == 70
    assert status.progress_for_status(S.AI_PROCESSING, 0) == 70
    assert status.progress_for_status(S.COMPLETED) == 100
    assert status.progress_for_status(S.NOT_UPLOADED) == 0
    assert status.progress_for_status(S.UPLOADING_TO_STORE, 250) == 70


def test_predicates():
    assert status.is_idle(S.NOT_UPLOADED)
    assert status.is_processing(S.UPLOADING_TO_STORE)
    assert not status.is_processing(S.COMPLETED)
    assert status.is_terminal(S.FAILED) and status.is_terminal(S.COMPLETED)
    assert status.can_retry(S.FAILED)
    assert not status.can_retry(S.AI_PROCESSING)


def test_advance_progress_is_monotonic():
    state = status.initial_progress("f1")
    state = status.advance_progress(state, S.COMPRESSING_IMAGE, 30)
    state = status.advance_progress(state, S.UPLOADING_TO_STORE, 10)
    assert state.progress == 30
    assert state.status is S.UPLOADING_TO_STORE


def test_failed_keeps_last_progress_and_completed_reports_full():
    state = status.advance_progress(status.initial_progress("f1"), S.UPLOADING_TO_STORE, 55)
    failed = status.advance_progress(state, S.FAILED, 0, error="boom")
    assert failed.progress == 55
    assert failed.error == "boom"

    done = status.advance_progress(state, S.COMPLETED, 0)
    assert done.progress == 100


def test_terminal_states_never_change():
    done = status.advance_progress(status.initial_progress("f1"), S.COMPLETED, 100)
    assert status.advance_progress(done, S.FAILED, 0, error="late") == done


def test_reset_progress_only_from_idle_or_failed():
    failed = UploadProgress(file_id="f1", progress=40, status=S.FAILED, error="x")
    reset = status.reset_progress(failed)
    assert reset == UploadProgress(file_id="f1")

    with pytest.raises(ValueError):
        status.reset_progress(UploadProgress(file_id="f1", status=S.AI_PROCESSING))


def test_aggregate_counts_and_mean():
    items = [
        UploadProgress(file_id="a", progress=100, status=S.COMPLETED),
        UploadProgress(file_id="b", progress=35, status=S.FAILED, error="x"),
        UploadProgress(file_id="c", progress=45, status=S.UPLOADING_TO_STORE),
        UploadProgress(file_id="d", progress=0, status=S.NOT_UPLOADED),
    ]
    summary = status.aggregate(items)
    assert summary.overall_progress == 45
    assert summary.completed_count == 1
    assert summary.failed_count == 1
    assert summary.processing_count == 1
    assert summary.uploading_count == 1
    assert summary.idle_count == 1
    assert status.failed_progresses(items) == [items[1]]
    assert status.progresses_with_status(items, S.COMPLETED) == [items[0]]


def test_aggregate_of_nothing_is_zero():
    summary = status.aggregate([])
    assert summary.overall_progress == 0
    assert summary.completed_count == 0


def test_tracker_drops_illegal_and_post_terminal_updates():
    seen = []
    tracker = ProgressTracker("f1", lambda s, p, m: seen.append((s, p)))

    assert tracker.stage(S.COMPRESSING_IMAGE, 100)
    assert not tracker.update(S.PROCESSING_PDF, 50)
    assert tracker.fail("broken")
    assert not tracker.complete()

    assert seen == [(S.COMPRESSING_IMAGE, 35), (S.FAILED, 35)]
    assert tracker.state.error == "broken"
