"""Batch transcribe-then-generate scheduling over many videos."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field, replace
from enum import Enum
import logging
import mimetypes
from pathlib import Path
import threading
from typing import Callable, Iterator, Sequence, Tuple
import uuid

from domain.captions import Caption, CaptionValidationError
from service.export_pipeline import NO_CAPTIONS_MESSAGE, ExportError, ExportResult
from service.transcription import (
    DEFAULT_TRANSCRIPTION_INSTRUCTION,
    TRANSCRIPTION_FAILED_MESSAGE,
    Transcriber,
    TranscriptionError,
    build_transcription_request,
)

LOGGER = logging.getLogger("batch_scheduler")

PHASE_BUSY_CODE = "caption_batch.phase.busy"
UNKNOWN_JOB_CODE = "caption_batch.job.unknown"
INVALID_PROGRESS_CODE = "caption_batch.job.invalid_progress"
UNHANDLED_ERROR_CODE = "caption_batch.unhandled_error"


class BatchSchedulerError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class JobStatus(str, Enum):
    """Lifecycle states for batch jobs."""

    PENDING = "pending"
    TRANSCRIBING = "transcribing"
    TRANSCRIBED = "transcribed"
    GENERATING = "generating"
    DONE = "done"
    ERROR = "error"


EXPORT_CANCELLED_MESSAGE = "Export cancelled."

REARMABLE_STATUSES = frozenset({JobStatus.TRANSCRIBED, JobStatus.DONE, JobStatus.ERROR})


@dataclass(frozen=True)
class VideoJob:
    """State snapshot for one video in the batch."""

    job_id: str
    source_path: Path
    status: JobStatus = JobStatus.PENDING
    captions: Tuple[Caption, ...] = ()
    progress: float = 0.0
    error_message: str | None = None
    output_video_path: Path | None = None
    output_caption_path: Path | None = None

    def __post_init__(self) -> None:
        if self.progress < 0.0 or self.progress > 100.0:
            raise BatchSchedulerError(
                INVALID_PROGRESS_CODE,
                f"progress must be between 0 and 100: {self.progress}",
            )


JobListener = Callable[[VideoJob], None]
Exporter = Callable[[VideoJob, Callable[[float], None]], ExportResult]


@dataclass
class JobStore:
    """Thread-safe, insertion-ordered store of job snapshots."""

    jobs: dict[str, VideoJob] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)
    listener: JobListener | None = None

    def create_job(self, source_path: Path) -> VideoJob:
        """Create a pending job for a source file."""
        job = VideoJob(f"{source_path.name}-{uuid.uuid4().hex}", source_path)
        with self.lock:
            self.jobs[job.job_id] = job
        self._notify(job)
        return job

    def get_job(self, job_id: str) -> VideoJob:
        """Fetch a job by ID."""
        with self.lock:
            job = self.jobs.get(job_id)
        if job is None:
            raise BatchSchedulerError(UNKNOWN_JOB_CODE, f"unknown job: {job_id}")
        return job

    def list_jobs(self) -> Tuple[VideoJob, ...]:
        """Return all jobs in insertion order."""
        with self.lock:
            return tuple(self.jobs.values())

    def first_with_status(self, status: JobStatus) -> VideoJob | None:
        """Return the earliest-added job in a status."""
        with self.lock:
            return next((job for job in self.jobs.values() if job.status == status), None)

    def update_job(self, job_id: str, **changes: object) -> VideoJob:
        """Replace a job snapshot with updated fields."""
        with self.lock:
            current = self.jobs.get(job_id)
            if current is None:
                raise BatchSchedulerError(UNKNOWN_JOB_CODE, f"unknown job: {job_id}")
            job = replace(current, **changes)
            self.jobs[job_id] = job
        self._notify(job)
        return job

    def _notify(self, job: VideoJob) -> None:
        if self.listener is not None:
            self.listener(job)


def is_video_file(file_path: Path) -> bool:
    """Return True when the file name maps to a ``video/*`` MIME type."""
    mime_type, _ = mimetypes.guess_type(file_path.name)
    return bool(mime_type and mime_type.startswith("video/"))


class BatchScheduler:
    """Run transcription and generation phases over the jobs in a store.

    Both phases process one job at a time in insertion order, and only one
    phase may run at once. Setting the cancel event stops either phase before
    its next job; jobs not reached keep their status.
    """

    def __init__(
        self,
        store: JobStore,
        transcriber: Transcriber,
        exporter: Exporter,
        instruction: str = DEFAULT_TRANSCRIPTION_INSTRUCTION,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.store = store
        self.transcriber = transcriber
        self.exporter = exporter
        self.instruction = instruction
        self.cancel_event = cancel_event
        self._phase_lock = threading.Lock()

    @contextlib.contextmanager
    def _phase(self, phase_name: str) -> Iterator[None]:
        if not self._phase_lock.acquire(blocking=False):
            raise BatchSchedulerError(
                PHASE_BUSY_CODE, f"cannot start {phase_name} while another phase is running"
            )
        try:
            LOGGER.info("batch_scheduler.%s.start", phase_name)
            yield
            LOGGER.info("batch_scheduler.%s.done", phase_name)
        finally:
            self._phase_lock.release()

    def _cancelled(self, phase_name: str) -> bool:
        if self.cancel_event is None or not self.cancel_event.is_set():
            return False
        LOGGER.warning("batch_scheduler.%s.cancelled", phase_name)
        return True

    def add_files(self, file_paths: Sequence[Path]) -> Tuple[VideoJob, ...]:
        """Add pending jobs for the video files among the given paths."""
        added: list[VideoJob] = []
        for file_path in file_paths:
            if not is_video_file(file_path):
                LOGGER.warning("batch_scheduler.intake.skipped: not a video: %s", file_path)
                continue
            added.append(self.store.create_job(file_path))
        return tuple(added)

    def run_transcription_phase(self) -> Tuple[VideoJob, ...]:
        """Transcribe pending jobs one at a time until none remain."""
        with self._phase("transcription"):
            while True:
                job = self.store.first_with_status(JobStatus.PENDING)
                if job is None:
                    break
                if self._cancelled("transcription"):
                    break
                self._transcribe(job)
        return self.store.list_jobs()

    def _transcribe(self, job: VideoJob) -> None:
        self.store.update_job(
            job.job_id, status=JobStatus.TRANSCRIBING, progress=0.0, error_message=None
        )
        try:
            captions = self.transcriber(
                build_transcription_request(job.source_path, self.instruction)
            )
        except (TranscriptionError, CaptionValidationError) as exc:
            LOGGER.error("%s: %s: %s", exc.code, job.job_id, str(exc).strip())
            self.store.update_job(
                job.job_id, status=JobStatus.ERROR, error_message=TRANSCRIPTION_FAILED_MESSAGE
            )
            return
        except Exception as exc:
            LOGGER.error("%s: %s: %s", UNHANDLED_ERROR_CODE, job.job_id, str(exc).strip())
            self.store.update_job(
                job.job_id, status=JobStatus.ERROR, error_message=TRANSCRIPTION_FAILED_MESSAGE
            )
            return
        self.store.update_job(
            job.job_id,
            status=JobStatus.TRANSCRIBED,
            captions=tuple(captions),
            progress=100.0,
        )

    def rearm_jobs(self) -> Tuple[VideoJob, ...]:
        """Move finished or failed jobs that have captions back to transcribed."""
        rearmed: list[VideoJob] = []
        for job in self.store.list_jobs():
            if job.status in REARMABLE_STATUSES and job.captions:
                rearmed.append(
                    self.store.update_job(
                        job.job_id, status=JobStatus.TRANSCRIBED, error_message=None
                    )
                )
        return tuple(rearmed)

    def run_generation_phase(self) -> Tuple[VideoJob, ...]:
        """Re-arm eligible jobs, then export every transcribed job serially."""
        with self._phase("generation"):
            self.rearm_jobs()
            queue = [
                job.job_id
                for job in self.store.list_jobs()
                if job.status == JobStatus.TRANSCRIBED
            ]
            for job_id in queue:
                if self._cancelled("generation"):
                    break
                if not self._generate(self.store.get_job(job_id)):
                    LOGGER.warning("batch_scheduler.generation.cancelled")
                    break
        return self.store.list_jobs()

    def _generate(self, job: VideoJob) -> bool:
        """Export one job; return False when the export was stopped early."""
        if not job.captions:
            self.store.update_job(
                job.job_id, status=JobStatus.ERROR, error_message=NO_CAPTIONS_MESSAGE
            )
            return True
        self.store.update_job(job.job_id, status=JobStatus.GENERATING, progress=0.0)

        def report_progress(progress: float) -> None:
            self.store.update_job(job.job_id, progress=max(0.0, min(100.0, progress)))

        try:
            result = self.exporter(job, report_progress)
        except (ExportError, CaptionValidationError) as exc:
            LOGGER.error("%s: %s: %s", exc.code, job.job_id, str(exc).strip())
            self.store.update_job(
                job.job_id, status=JobStatus.ERROR, error_message=str(exc).strip()
            )
            return True
        except Exception as exc:
            LOGGER.error("%s: %s: %s", UNHANDLED_ERROR_CODE, job.job_id, str(exc).strip())
            self.store.update_job(
                job.job_id,
                status=JobStatus.ERROR,
                error_message=f"{UNHANDLED_ERROR_CODE}: {str(exc).strip()}",
            )
            return True
        if result.stopped_early:
            LOGGER.warning("batch_scheduler.generation.stopped_early: %s", job.job_id)
            self.store.update_job(
                job.job_id, status=JobStatus.ERROR, error_message=EXPORT_CANCELLED_MESSAGE
            )
            return False
        self.store.update_job(
            job.job_id,
            status=JobStatus.DONE,
            progress=100.0,
            output_video_path=result.video_path,
            output_caption_path=result.caption_path,
        )
        return True
