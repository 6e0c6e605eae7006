"""Tests for the batch transcription and generation phases."""

from __future__ import annotations

from pathlib import Path
import threading
from typing import Callable

import pytest

from domain.captions import Caption
from service.batch_scheduler import (
    BatchScheduler,
    BatchSchedulerError,
    JobStatus,
    JobStore,
    VideoJob,
    is_video_file,
)
from service.export_pipeline import ExportError, ExportResult
from service.transcription import TranscriptionError, TranscriptionRequest


class FakeTranscriber:
    """Returns canned captions and checks only one job is transcribing."""

    def __init__(self, store: JobStore, failing: set[str] | None = None) -> None:
        self.store = store
        self.failing = failing or set()
        self.calls: list[str] = []

    def __call__(self, request: TranscriptionRequest) -> tuple[Caption, ...]:
        active = [job for job in self.store.list_jobs() if job.status == JobStatus.TRANSCRIBING]
        assert len(active) == 1
        name = request.source_path.name
        self.calls.append(name)
        if name in self.failing:
            raise TranscriptionError("caption_video.transcription.http_status", "HTTP 500")
        if name.startswith("silent"):
            return ()
        return (Caption(1, 0.0, 1.0, f"words from {name}"),)


class FakeExporter:
    """Records export order and reports progress."""

    def __init__(
        self,
        store: JobStore,
        failing: set[str] | None = None,
        stopping: set[str] | None = None,
    ) -> None:
        self.store = store
        self.failing = failing or set()
        self.stopping = stopping or set()
        self.calls: list[str] = []

    def __call__(self, job: VideoJob, progress: Callable[[float], None]) -> ExportResult:
        active = [item for item in self.store.list_jobs() if item.status == JobStatus.GENERATING]
        assert [item.job_id for item in active] == [job.job_id]
        self.calls.append(job.source_path.name)
        if job.source_path.name in self.failing:
            raise ExportError("caption_video.ffmpeg.process_failed", "ffmpeg failed")
        progress(50.0)
        assert self.store.get_job(job.job_id).progress == 50.0
        progress(150.0)
        return ExportResult(
            video_path=job.source_path.with_name(f"{job.source_path.stem}_captioned.mp4"),
            caption_path=job.source_path.with_suffix(".srt"),
            width=1920,
            height=1080,
            mime_type="video/mp4",
            caption_mime_type="text/plain;charset=utf-8",
            frames_rendered=30,
            frames_written=30,
            click_count=0,
            has_audio=False,
            stopped_early=job.source_path.name in self.stopping,
        )


def build_scheduler(
    failing_transcriptions: set[str] | None = None,
    failing_exports: set[str] | None = None,
) -> tuple[BatchScheduler, FakeTranscriber, FakeExporter, list[VideoJob]]:
    """Wire a scheduler with fakes and a listener that records updates."""
    updates: list[VideoJob] = []
    store = JobStore(listener=updates.append)
    transcriber = FakeTranscriber(store, failing_transcriptions)
    exporter = FakeExporter(store, failing_exports)
    return BatchScheduler(store, transcriber, exporter), transcriber, exporter, updates


def test_is_video_file() -> None:
    """Accept only video MIME types."""
    assert is_video_file(Path("clip.mp4"))
    assert is_video_file(Path("CLIP.MOV"))
    assert not is_video_file(Path("notes.txt"))
    assert not is_video_file(Path("song.mp3"))


def test_add_files_skips_non_video() -> None:
    """Create pending jobs for videos only, in order."""
    scheduler, _, _, _ = build_scheduler()
    added = scheduler.add_files([Path("a.mp4"), Path("notes.txt"), Path("b.mov")])
    assert [job.source_path.name for job in added] == ["a.mp4", "b.mov"]
    assert all(job.status == JobStatus.PENDING for job in added)
    assert added[0].job_id.startswith("a.mp4-")
    assert added[0].job_id != added[1].job_id


def test_transcription_phase_runs_serially_in_order() -> None:
    """Transcribe one job at a time in insertion order."""
    scheduler, transcriber, _, updates = build_scheduler()
    scheduler.add_files([Path("a.mp4"), Path("b.mp4"), Path("c.mp4")])
    jobs = scheduler.run_transcription_phase()
    assert transcriber.calls == ["a.mp4", "b.mp4", "c.mp4"]
    assert [job.status for job in jobs] == [JobStatus.TRANSCRIBED] * 3
    assert all(job.progress == 100.0 for job in jobs)
    assert jobs[0].captions[0].text == "words from a.mp4"
    statuses = [(job.source_path.name, job.status) for job in updates]
    assert statuses.index(("a.mp4", JobStatus.TRANSCRIBED)) < statuses.index(
        ("b.mp4", JobStatus.TRANSCRIBING)
    )


def test_transcription_failure_marks_job() -> None:
    """A failed transcription stores the user-facing message and moves on."""
    scheduler, _, _, _ = build_scheduler(failing_transcriptions={"bad.mp4"})
    scheduler.add_files([Path("bad.mp4"), Path("good.mp4")])
    bad, good = scheduler.run_transcription_phase()
    assert bad.status == JobStatus.ERROR
    assert bad.error_message == (
        "Transcription failed. The AI model might be unable to process this file."
    )
    assert good.status == JobStatus.TRANSCRIBED


def test_generation_phase_exports_in_order() -> None:
    """Export transcribed jobs one at a time and record outputs."""
    scheduler, _, exporter, _ = build_scheduler()
    scheduler.add_files([Path("a.mp4"), Path("b.mp4")])
    scheduler.run_transcription_phase()
    jobs = scheduler.run_generation_phase()
    assert exporter.calls == ["a.mp4", "b.mp4"]
    assert [job.status for job in jobs] == [JobStatus.DONE, JobStatus.DONE]
    assert jobs[0].output_video_path == Path("a_captioned.mp4")
    assert jobs[0].output_caption_path == Path("a.srt")
    assert jobs[0].progress == 100.0


def test_generation_clamps_progress() -> None:
    """Progress above 100 is clamped."""
    scheduler, _, _, updates = build_scheduler()
    scheduler.add_files([Path("a.mp4")])
    scheduler.run_transcription_phase()
    scheduler.run_generation_phase()
    generating = [job.progress for job in updates if job.status == JobStatus.GENERATING]
    assert generating == [0.0, 50.0, 100.0]


def test_generation_marks_empty_captions_as_error() -> None:
    """Jobs with no captions fail without calling the exporter."""
    scheduler, _, exporter, _ = build_scheduler()
    scheduler.add_files([Path("silent.mp4"), Path("a.mp4")])
    scheduler.run_transcription_phase()
    silent, spoken = scheduler.run_generation_phase()
    assert silent.status == JobStatus.ERROR
    assert silent.error_message == "No captions available to generate video."
    assert spoken.status == JobStatus.DONE
    assert exporter.calls == ["a.mp4"]


def test_generation_failure_keeps_going() -> None:
    """An export error marks the job and the queue continues."""
    scheduler, _, exporter, _ = build_scheduler(failing_exports={"a.mp4"})
    scheduler.add_files([Path("a.mp4"), Path("b.mp4")])
    scheduler.run_transcription_phase()
    failed, done = scheduler.run_generation_phase()
    assert failed.status == JobStatus.ERROR
    assert failed.error_message == "ffmpeg failed"
    assert done.status == JobStatus.DONE
    assert exporter.calls == ["a.mp4", "b.mp4"]


def test_generation_rearms_finished_jobs() -> None:
    """A second generation run re-exports done and failed jobs that have captions."""
    scheduler, transcriber, exporter, _ = build_scheduler(
        failing_transcriptions={"bad.mp4"}, failing_exports={"b.mp4"}
    )
    scheduler.add_files([Path("a.mp4"), Path("b.mp4"), Path("bad.mp4")])
    scheduler.run_transcription_phase()
    scheduler.run_generation_phase()
    exporter.failing.clear()
    jobs = scheduler.run_generation_phase()
    assert exporter.calls == ["a.mp4", "b.mp4", "a.mp4", "b.mp4"]
    assert [job.status for job in jobs] == [JobStatus.DONE, JobStatus.DONE, JobStatus.ERROR]
    assert jobs[1].error_message is None
    assert transcriber.calls == ["a.mp4", "b.mp4", "bad.mp4"]


def test_rearm_skips_jobs_without_captions() -> None:
    """Only jobs holding captions are re-armed."""
    scheduler, _, _, _ = build_scheduler(failing_transcriptions={"bad.mp4"})
    scheduler.add_files([Path("bad.mp4"), Path("a.mp4")])
    scheduler.run_transcription_phase()
    rearmed = scheduler.rearm_jobs()
    assert [job.source_path.name for job in rearmed] == ["a.mp4"]


def test_phases_do_not_overlap() -> None:
    """Starting a phase while another runs is refused."""
    store = JobStore()
    errors: list[str] = []
    scheduler: BatchScheduler

    def reentrant_transcriber(request: TranscriptionRequest) -> tuple[Caption, ...]:
        try:
            scheduler.run_generation_phase()
        except BatchSchedulerError as exc:
            errors.append(exc.code)
        return (Caption(1, 0.0, 1.0, "x"),)

    scheduler = BatchScheduler(store, reentrant_transcriber, FakeExporter(store))
    scheduler.add_files([Path("a.mp4")])
    scheduler.run_transcription_phase()
    assert errors == ["caption_batch.phase.busy"]
    assert store.list_jobs()[0].status == JobStatus.TRANSCRIBED


def test_job_store_rejects_unknown_job() -> None:
    """Unknown job ids fail with a stable code."""
    store = JobStore()
    with pytest.raises(BatchSchedulerError) as exc_info:
        store.get_job("missing")
    assert exc_info.value.code == "caption_batch.job.unknown"
    with pytest.raises(BatchSchedulerError):
        store.update_job("missing", progress=1.0)


def test_video_job_validates_progress() -> None:
    """Progress must stay within 0..100."""
    with pytest.raises(BatchSchedulerError) as exc_info:
        VideoJob("job", Path("a.mp4"), progress=101.0)
    assert exc_info.value.code == "caption_batch.job.invalid_progress"


def test_stopped_early_export_is_not_done() -> None:
    """A truncated export is an error and the queue stops behind it."""
    store = JobStore()
    exporter = FakeExporter(store, stopping={"a.mp4"})
    scheduler = BatchScheduler(store, FakeTranscriber(store), exporter)
    scheduler.add_files([Path("a.mp4"), Path("b.mp4"), Path("c.mp4")])
    scheduler.run_transcription_phase()
    stopped, second, third = scheduler.run_generation_phase()
    assert exporter.calls == ["a.mp4"]
    assert stopped.status == JobStatus.ERROR
    assert stopped.error_message == "Export cancelled."
    assert stopped.output_video_path is None
    assert [second.status, third.status] == [JobStatus.TRANSCRIBED, JobStatus.TRANSCRIBED]


def test_cancel_event_stops_transcription_between_jobs() -> None:
    """Jobs after a cancellation stay pending."""
    store = JobStore()
    cancel_event = threading.Event()
    calls: list[str] = []

    def cancelling_transcriber(request: TranscriptionRequest) -> tuple[Caption, ...]:
        calls.append(request.source_path.name)
        cancel_event.set()
        return (Caption(1, 0.0, 1.0, "x"),)

    scheduler = BatchScheduler(
        store, cancelling_transcriber, FakeExporter(store), cancel_event=cancel_event
    )
    scheduler.add_files([Path("a.mp4"), Path("b.mp4")])
    first, second = scheduler.run_transcription_phase()
    assert calls == ["a.mp4"]
    assert first.status == JobStatus.TRANSCRIBED
    assert second.status == JobStatus.PENDING


def test_cancel_event_stops_generation_between_jobs() -> None:
    """No further exports start once the cancel event is set."""
    store = JobStore()
    cancel_event = threading.Event()
    exporter = FakeExporter(store)
    scheduler = BatchScheduler(
        store, FakeTranscriber(store), exporter, cancel_event=cancel_event
    )
    scheduler.add_files([Path("a.mp4"), Path("b.mp4")])
    scheduler.run_transcription_phase()
    cancel_event.set()
    jobs = scheduler.run_generation_phase()
    assert exporter.calls == []
    assert [job.status for job in jobs] == [JobStatus.TRANSCRIBED, JobStatus.TRANSCRIBED]
