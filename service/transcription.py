"""Transcription collaborator interface and its clients."""

from __future__ import annotations

import base64
from dataclasses import dataclass
import json
import logging
import mimetypes
from pathlib import Path
from typing import Callable, Tuple
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from domain.captions import Caption, CaptionValidationError, parse_caption_records
from service.caption_track import read_caption_track
from service.runtime_config import RuntimeConfig

LOGGER = logging.getLogger("transcription")

MEDIA_READ_CODE = "caption_video.transcription.media_unreadable"
SERVICE_UNAVAILABLE_CODE = "caption_video.transcription.unavailable"
SERVICE_STATUS_CODE = "caption_video.transcription.http_status"
INVALID_RESPONSE_CODE = "caption_video.transcription.invalid_response"
SIDECAR_MISSING_CODE = "caption_video.transcription.sidecar_missing"

TRANSCRIPTION_FAILED_MESSAGE = (
    "Transcription failed. The AI model might be unable to process this file."
)
DEFAULT_TRANSCRIPTION_INSTRUCTION = (
    "You are an expert transcriptionist specializing in the Egyptian Arabic "
    "dialect. Transcribe the audio from this video precisely. Do NOT translate, "
    "normalize, or alter any slang, colloquialisms, or expressions. Preserve the "
    "exact words and phrasing spoken. Provide the output as a valid JSON array of "
    "objects. Each object must have 'id' (a unique number), 'start' (start time "
    "in seconds), 'end' (end time in seconds), and 'text' (the transcribed text). "
    "Ensure timestamps are accurate."
)
SIDECAR_SUFFIXES = (".json", ".srt", ".vtt")
DEFAULT_MIME_TYPE = "application/octet-stream"


class TranscriptionError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class TranscriptionRequest:
    """Media to transcribe plus the instruction sent with it."""

    source_path: Path
    mime_type: str
    instruction: str = DEFAULT_TRANSCRIPTION_INSTRUCTION

    def read_media(self) -> bytes:
        """Read the media bytes."""
        try:
            return self.source_path.read_bytes()
        except OSError as exc:
            raise TranscriptionError(
                MEDIA_READ_CODE, f"failed to read media: {self.source_path}"
            ) from exc


Transcriber = Callable[[TranscriptionRequest], Tuple[Caption, ...]]


def guess_mime_type(source_path: Path) -> str:
    """Guess the MIME type of a media file from its name."""
    mime_type, _ = mimetypes.guess_type(source_path.name)
    return mime_type or DEFAULT_MIME_TYPE


def build_transcription_request(
    source_path: Path, instruction: str = DEFAULT_TRANSCRIPTION_INSTRUCTION
) -> TranscriptionRequest:
    """Build a request for a media file."""
    return TranscriptionRequest(
        source_path=source_path,
        mime_type=guess_mime_type(source_path),
        instruction=instruction,
    )


def parse_transcription_payload(payload: object) -> Tuple[Caption, ...]:
    """Validate a JSON caption array (optionally wrapped in ``captions``)."""
    if isinstance(payload, dict) and "captions" in payload:
        payload = payload["captions"]
    try:
        return parse_caption_records(payload)
    except CaptionValidationError as exc:
        raise TranscriptionError(INVALID_RESPONSE_CODE, str(exc)) from exc


class HttpTranscriber:
    """Send media as base64 JSON to a transcription endpoint."""

    def __init__(self, url: str, token: str | None, timeout_seconds: float) -> None:
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds

    def build_request(self, request: TranscriptionRequest) -> Request:
        """Build the HTTP request for a transcription call."""
        body = json.dumps(
            {
                "instruction": request.instruction,
                "mimeType": request.mime_type,
                "data": base64.b64encode(request.read_media()).decode("ascii"),
            }
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return Request(self.url, data=body, headers=headers, method="POST")

    def __call__(self, request: TranscriptionRequest) -> Tuple[Caption, ...]:
        http_request = self.build_request(request)
        LOGGER.info(
            "transcription.request: %s (%s) -> %s",
            request.source_path,
            request.mime_type,
            self.url,
        )
        try:
            with urlopen(http_request, timeout=self.timeout_seconds) as response:
                raw_body = response.read()
        except HTTPError as exc:
            raise TranscriptionError(
                SERVICE_STATUS_CODE, f"transcription service returned HTTP {exc.code}"
            ) from exc
        except (URLError, OSError) as exc:
            raise TranscriptionError(
                SERVICE_UNAVAILABLE_CODE, f"transcription service unreachable: {exc}"
            ) from exc
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise TranscriptionError(
                INVALID_RESPONSE_CODE, "transcription response is not valid JSON"
            ) from exc
        return parse_transcription_payload(payload)


class SidecarTranscriber:
    """Load captions from a ``.json``, ``.srt`` or ``.vtt`` file beside the media."""

    def find_sidecar(self, source_path: Path) -> Path | None:
        """Return the first sidecar file that exists for a media file."""
        for suffix in SIDECAR_SUFFIXES:
            candidate = source_path.with_suffix(suffix)
            if candidate.is_file():
                return candidate
        return None

    def __call__(self, request: TranscriptionRequest) -> Tuple[Caption, ...]:
        sidecar_path = self.find_sidecar(request.source_path)
        if sidecar_path is None:
            raise TranscriptionError(
                SIDECAR_MISSING_CODE,
                f"no caption sidecar found for {request.source_path}",
            )
        LOGGER.info("transcription.sidecar: %s", sidecar_path)
        if sidecar_path.suffix == ".json":
            try:
                payload = json.loads(sidecar_path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
                raise TranscriptionError(
                    INVALID_RESPONSE_CODE, f"invalid caption JSON: {sidecar_path}"
                ) from exc
            return parse_transcription_payload(payload)
        try:
            return read_caption_track(sidecar_path)
        except CaptionValidationError as exc:
            raise TranscriptionError(INVALID_RESPONSE_CODE, str(exc)) from exc


def build_transcriber(config: RuntimeConfig) -> Transcriber:
    """Use the HTTP service when configured, otherwise sidecar files."""
    if config.transcribe_url:
        return HttpTranscriber(
            config.transcribe_url,
            config.transcribe_token,
            config.transcribe_timeout_seconds,
        )
    return SidecarTranscriber()
