#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "numpy>=1.26",
#   "pillow>=10.1"
# ]
# ///
"""Transcribe and caption many videos, one encoder session at a time."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
import os
from pathlib import Path
import sys
import threading
from typing import Callable, Sequence, Tuple

from caption_video import (
    add_export_arguments,
    add_style_arguments,
    build_export_spec,
    install_cancel_handlers,
    resolve_style,
)
from domain.captions import INPUT_FILE_CODE, CaptionValidationError, ExportSpec, StyleSpec
from service.batch_scheduler import (
    BatchScheduler,
    BatchSchedulerError,
    Exporter,
    JobStatus,
    JobStore,
    VideoJob,
)
from service.caption_renderer import FontResolver
from service.export_pipeline import ExportError, ExportResult, export_captioned_video
from service.runtime_config import (
    RuntimeConfig,
    add_runtime_arguments,
    configure_logging,
    load_config,
)
from service.transcription import TranscriptionError, build_transcriber

LOGGER = logging.getLogger("caption_batch")


@dataclass(frozen=True)
class BatchRequest:
    """Parsed CLI request."""

    inputs: Tuple[Path, ...]
    output_dir: Path
    style: StyleSpec
    export_spec: ExportSpec
    transcribe_only: bool


def parse_args(
    argv: Sequence[str], env: dict[str, str]
) -> Tuple[BatchRequest, RuntimeConfig]:
    """Parse CLI arguments into a request and runtime configuration."""
    parser = argparse.ArgumentParser(prog="caption_batch.py", add_help=True)
    parser.add_argument("inputs", nargs="+", help="video files or directories")
    parser.add_argument("--output-dir", required=True)
    parser.add_argument("--transcribe-only", action="store_true")
    add_style_arguments(parser)
    add_export_arguments(parser)
    add_runtime_arguments(parser)

    parsed = parser.parse_args(argv)
    config = load_config(parsed, env)
    output_dir = Path(parsed.output_dir)
    if not output_dir.is_dir():
        raise CaptionValidationError(
            INPUT_FILE_CODE, f"output directory does not exist: {output_dir}"
        )
    request = BatchRequest(
        inputs=expand_inputs(parsed.inputs),
        output_dir=output_dir,
        style=resolve_style(parsed, config),
        export_spec=build_export_spec(parsed),
        transcribe_only=parsed.transcribe_only,
    )
    return request, config


def expand_inputs(raw_inputs: Sequence[str]) -> Tuple[Path, ...]:
    """Expand directories to their files, keeping argument order."""
    paths: list[Path] = []
    for raw_value in raw_inputs:
        input_path = Path(raw_value)
        if input_path.is_dir():
            paths.extend(sorted(path for path in input_path.iterdir() if path.is_file()))
        elif input_path.is_file():
            paths.append(input_path)
        else:
            raise CaptionValidationError(INPUT_FILE_CODE, f"input not found: {input_path}")
    return tuple(paths)


def build_exporter(
    request: BatchRequest,
    config: RuntimeConfig,
    fonts: FontResolver,
    cancel_event: threading.Event,
) -> Exporter:
    """Bind export settings into a per-job exporter."""

    def export_job(job: VideoJob, report_progress: Callable[[float], None]) -> ExportResult:
        return export_captioned_video(
            job.source_path,
            job.captions,
            request.style,
            request.export_spec,
            request.output_dir,
            fonts,
            ffmpeg_path=config.ffmpeg_path,
            ffprobe_path=config.ffprobe_path,
            progress_callback=report_progress,
            cancel_event=cancel_event,
        )

    return export_job


def log_job_update(job: VideoJob) -> None:
    """Log job state changes other than progress ticks."""
    if job.status in (JobStatus.TRANSCRIBING, JobStatus.GENERATING) and job.progress > 0:
        return
    LOGGER.info("caption_batch.job: %s %s", job.job_id, job.status.value)


def job_summary(job: VideoJob) -> dict[str, object]:
    """Describe a finished job for the JSON summary."""
    return {
        "id": job.job_id,
        "source": str(job.source_path),
        "status": job.status.value,
        "captions": len(job.captions),
        "error": job.error_message,
        "video": str(job.output_video_path) if job.output_video_path else None,
        "captionFile": str(job.output_caption_path) if job.output_caption_path else None,
    }


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    env = dict(os.environ)
    configure_logging(env)

    try:
        request, config = parse_args(sys.argv[1:] if argv is None else argv, env)
        cancel_event = threading.Event()
        install_cancel_handlers(cancel_event)
        store = JobStore(listener=log_job_update)
        scheduler = BatchScheduler(
            store,
            build_transcriber(config),
            build_exporter(request, config, FontResolver(config.fonts_dir), cancel_event),
            cancel_event=cancel_event,
        )
        if not scheduler.add_files(request.inputs):
            raise CaptionValidationError(INPUT_FILE_CODE, "no video files to process")
        jobs = scheduler.run_transcription_phase()
        if not request.transcribe_only:
            jobs = scheduler.run_generation_phase()
        for job in jobs:
            sys.stdout.write(json.dumps(job_summary(job), ensure_ascii=False) + "\n")
        return 1 if any(job.status == JobStatus.ERROR for job in jobs) else 0
    except CaptionValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except TranscriptionError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except ExportError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except BatchSchedulerError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except KeyboardInterrupt:
        LOGGER.error("caption_batch.cancelled: interrupted")
        return 1
    except Exception as exc:
        LOGGER.error("caption_batch.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
