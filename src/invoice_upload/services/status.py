"""
Upload status state machine and multi-file progress aggregation.

Transition checks here are advisory: callers decide what to do with an
illegal transition. ``ProgressTracker`` is the caller used by the pipeline; it
drops illegal or post-terminal updates and keeps progress monotonic.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from ..models import AggregateProgress, UploadProgress, UploadStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[UploadStatus, float, "str | None"], None]

VALID_STATUS_TRANSITIONS: dict[UploadStatus, tuple[UploadStatus, ...]] = {
    UploadStatus.NOT_UPLOADED: (
        UploadStatus.PROCESSING_PDF,
        UploadStatus.COMPRESSING_IMAGE,
        UploadStatus.FAILED,
    ),
    UploadStatus.PROCESSING_PDF: (UploadStatus.COMPRESSING_IMAGE, UploadStatus.FAILED),
    UploadStatus.COMPRESSING_IMAGE: (UploadStatus.UPLOADING_TO_STORE, UploadStatus.FAILED),
    UploadStatus.UPLOADING_TO_STORE: (UploadStatus.AI_PROCESSING, UploadStatus.FAILED),
    UploadStatus.AI_PROCESSING: (UploadStatus.COMPLETED, UploadStatus.FAILED),
    UploadStatus.COMPLETED: (),
    # A failed upload is retried by starting a new pipeline, not by a transition
    UploadStatus.FAILED: (),
}

# (base, span) of each stage within the overall 0-100 range
STAGE_WEIGHTS: dict[UploadStatus, tuple[float, float]] = {
    UploadStatus.PROCESSING_PDF: (0.0, 20.0),
    UploadStatus.COMPRESSING_IMAGE: (20.0, 15.0),
    UploadStatus.UPLOADING_TO_STORE: (35.0, 35.0),
    UploadStatus.AI_PROCESSING: (70.0, 30.0),
}

PROCESSING_STATUSES = frozenset(STAGE_WEIGHTS)
TERMINAL_STATUSES = frozenset({UploadStatus.COMPLETED, UploadStatus.FAILED})


def is_valid_transition(from_status: UploadStatus, to_status: UploadStatus) -> bool:
    return to_status in VALID_STATUS_TRANSITIONS.get(from_status, ())


def next_statuses(status: UploadStatus) -> list[UploadStatus]:
    return list(VALID_STATUS_TRANSITIONS.get(status, ()))


def progress_for_status(status: UploadStatus, stage_progress: float = 0) -> float:
    """Map a stage and its own 0-100 progress onto the overall 0-100 scale."""

    if status is UploadStatus.COMPLETED:
        return 100.0
    if status not in STAGE_WEIGHTS:
        return 0.0
    base, span = STAGE_WEIGHTS[status]
    within = min(max(stage_progress, 0.0), 100.0) / 100.0
    return min(100.0, max(0.0, base + span * within))


def is_idle(status: UploadStatus) -> bool:
    return status is UploadStatus.NOT_UPLOADED


def is_processing(status: UploadStatus) -> bool:
    return status in PROCESSING_STATUSES


def is_processing_pdf(status: UploadStatus) -> bool:
    return status is UploadStatus.PROCESSING_PDF


def is_compressing_image(status: UploadStatus) -> bool:
    return status is UploadStatus.COMPRESSING_IMAGE


def is_uploading_to_store(status: UploadStatus) -> bool:
    return status is UploadStatus.UPLOADING_TO_STORE


def is_ai_processing(status: UploadStatus) -> bool:
    return status is UploadStatus.AI_PROCESSING


def is_completed(status: UploadStatus) -> bool:
    return status is UploadStatus.COMPLETED


def is_failed(status: UploadStatus) -> bool:
    return status is UploadStatus.FAILED


def is_terminal(status: UploadStatus) -> bool:
    return status in TERMINAL_STATUSES


def can_retry(status: UploadStatus) -> bool:
    return status in (UploadStatus.FAILED, UploadStatus.NOT_UPLOADED)


def initial_progress(file_id: str) -> UploadProgress:
    return UploadProgress(file_id=file_id)


def advance_progress(
    current: UploadProgress,
    status: UploadStatus,
    progress: float,
    error: str | None = None,
) -> UploadProgress:
    """
    Return the next progress state.

    Terminal states never change. While non-terminal, progress never moves
    backwards; COMPLETED always reports 100 and FAILED keeps the last value.
    """

    if is_terminal(current.status):
        return current

    if status is UploadStatus.COMPLETED:
        value = 100.0
    elif status is UploadStatus.FAILED:
        value = current.progress
    else:
        value = max(current.progress, min(max(progress, 0.0), 100.0))

    return current.model_copy(update={"status": status, "progress": value, "error": error})


def reset_progress(current: UploadProgress) -> UploadProgress:
    """Start over for a retry. Only idle or failed uploads may be reset."""

    if not can_retry(current.status):
        raise ValueError(f"Cannot retry an upload in status {current.status.value}")
    return initial_progress(current.file_id)


def aggregate(progresses: Iterable[UploadProgress]) -> AggregateProgress:
    """Mean progress plus per-status counts. Empty input gives all zeros."""

    items = list(progresses)
    if not items:
        return AggregateProgress()

    statuses = [item.status for item in items]
    return AggregateProgress(
        overall_progress=sum(item.progress for item in items) / len(items),
        completed_count=sum(map(is_completed, statuses)),
        failed_count=sum(map(is_failed, statuses)),
        processing_count=sum(map(is_processing, statuses)),
        idle_count=sum(map(is_idle, statuses)),
        pdf_processing_count=sum(map(is_processing_pdf, statuses)),
        image_processing_count=sum(map(is_compressing_image, statuses)),
        uploading_count=sum(map(is_uploading_to_store, statuses)),
        ai_processing_count=sum(map(is_ai_processing, statuses)),
    )


def progresses_with_status(
    progresses: Iterable[UploadProgress], status: UploadStatus
) -> list[UploadProgress]:
    return [item for item in progresses if item.status is status]


def failed_progresses(progresses: Iterable[UploadProgress]) -> list[UploadProgress]:
    """Failed uploads that carry an error message."""

    return [item for item in progresses if is_failed(item.status) and item.error]


class ProgressTracker:
    """
    Guards the progress reported for one pipeline run.

    Updates are applied through ``advance_progress``; illegal transitions and
    anything after a terminal status are dropped with a warning, so the
    callback only ever sees a monotonic sequence ending in at most one
    terminal update.
    """

    def __init__(self, file_id: str, callback: ProgressCallback | None = None) -> None:
        self.state = initial_progress(file_id)
        self._callback = callback

    @property
    def status(self) -> UploadStatus:
        return self.state.status

    @property
    def progress(self) -> float:
        return self.state.progress

    def update(
        self,
        status: UploadStatus,
        progress: float,
        message: str | None = None,
        error: str | None = None,
    ) -> bool:
        current = self.state
        if is_terminal(current.status):
            logger.warning(
                f"[STATUS] {current.file_id}: ignoring {status.value} after terminal {current.status.value}"
            )
            return False
        if status is not current.status and not is_valid_transition(current.status, status):
            logger.warning(
                f"[STATUS] {current.file_id}: illegal transition {current.status.value} -> {status.value}"
            )
            return False

        self.state = advance_progress(current, status, progress, error)
        if self._callback is not None:
            self._callback(self.state.status, self.state.progress, message)
        return True

    def stage(self, status: UploadStatus, stage_progress: float, message: str | None = None) -> bool:
        """Report progress within a stage using the stage weighting table."""

        return self.update(status, progress_for_status(status, stage_progress), message)

    def fail(self, error: str) -> bool:
        return self.update(UploadStatus.FAILED, self.state.progress, error, error=error)

    def complete(self, message: str | None = None) -> bool:
        return self.update(UploadStatus.COMPLETED, 100.0, message)
