"""Runtime configuration shared by the caption CLIs."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import logging
from pathlib import Path

from domain.captions import CaptionValidationError

INVALID_CONFIG_CODE = "caption_video.input.invalid_config"

LOG_LEVEL_ENV = "CAPTION_VIDEO_LOG_LEVEL"
FFMPEG_PATH_ENV = "CAPTION_VIDEO_FFMPEG_PATH"
FFPROBE_PATH_ENV = "CAPTION_VIDEO_FFPROBE_PATH"
FONTS_DIR_ENV = "CAPTION_VIDEO_FONTS_DIR"
TRANSCRIBE_URL_ENV = "CAPTION_VIDEO_TRANSCRIBE_URL"
TRANSCRIBE_TOKEN_ENV = "CAPTION_VIDEO_TRANSCRIBE_TOKEN"
TRANSCRIBE_TIMEOUT_ENV = "CAPTION_VIDEO_TRANSCRIBE_TIMEOUT_SECONDS"
PRESETS_FILE_ENV = "CAPTION_VIDEO_PRESETS_FILE"

DEFAULT_FFMPEG_PATH = "ffmpeg"
DEFAULT_FFPROBE_PATH = "ffprobe"
DEFAULT_TRANSCRIBE_TIMEOUT_SECONDS = 300.0
LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


@dataclass(frozen=True)
class RuntimeConfig:
    """Tool locations, fonts and collaborator endpoints."""

    ffmpeg_path: str = DEFAULT_FFMPEG_PATH
    ffprobe_path: str = DEFAULT_FFPROBE_PATH
    fonts_dir: str | None = None
    transcribe_url: str | None = None
    transcribe_token: str | None = None
    transcribe_timeout_seconds: float = DEFAULT_TRANSCRIBE_TIMEOUT_SECONDS
    presets_file: Path | None = None

    def __post_init__(self) -> None:
        if not self.ffmpeg_path.strip():
            raise CaptionValidationError(
                INVALID_CONFIG_CODE, "ffmpeg path must be non-empty"
            )
        if not self.ffprobe_path.strip():
            raise CaptionValidationError(
                INVALID_CONFIG_CODE, "ffprobe path must be non-empty"
            )
        if self.transcribe_timeout_seconds <= 0:
            raise CaptionValidationError(
                INVALID_CONFIG_CODE, "transcribe timeout must be positive"
            )
        if self.transcribe_url is not None and not self.transcribe_url.startswith(
            ("http://", "https://")
        ):
            raise CaptionValidationError(
                INVALID_CONFIG_CODE, "transcribe url must be http or https"
            )


def configure_logging(env: dict[str, str]) -> None:
    """Configure logging from environment."""
    level_name = env.get(LOG_LEVEL_ENV, "INFO").strip().upper()
    logging.basicConfig(
        level=LOG_LEVELS.get(level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def read_env_text(env: dict[str, str], key: str) -> str | None:
    """Read a trimmed, non-empty string from the environment."""
    raw_value = env.get(key, "").strip()
    return raw_value or None


def read_env_float(
    env: dict[str, str], key: str, field_name: str, fallback: float
) -> float:
    """Read a positive float from the environment."""
    raw_value = env.get(key, "").strip()
    if not raw_value:
        return fallback
    try:
        parsed = float(raw_value)
    except ValueError as exc:
        raise CaptionValidationError(
            INVALID_CONFIG_CODE, f"{field_name} must be a number"
        ) from exc
    if parsed <= 0:
        raise CaptionValidationError(
            INVALID_CONFIG_CODE, f"{field_name} must be positive"
        )
    return parsed


def add_runtime_arguments(parser: argparse.ArgumentParser) -> None:
    """Register the options that override environment configuration."""
    parser.add_argument("--ffmpeg-path", default=None)
    parser.add_argument("--ffprobe-path", default=None)
    parser.add_argument("--fonts-dir", default=None)
    parser.add_argument("--transcribe-url", default=None)
    parser.add_argument("--transcribe-timeout-seconds", type=float, default=None)
    parser.add_argument("--presets-file", default=None)


def load_config(args: argparse.Namespace, env: dict[str, str]) -> RuntimeConfig:
    """Load runtime configuration from args and environment."""
    ffmpeg_path = args.ffmpeg_path or read_env_text(env, FFMPEG_PATH_ENV)
    ffprobe_path = args.ffprobe_path or read_env_text(env, FFPROBE_PATH_ENV)
    fonts_dir = args.fonts_dir or read_env_text(env, FONTS_DIR_ENV)
    transcribe_url = args.transcribe_url or read_env_text(env, TRANSCRIBE_URL_ENV)
    timeout_seconds = read_env_float(
        env,
        TRANSCRIBE_TIMEOUT_ENV,
        "transcribe-timeout-seconds",
        DEFAULT_TRANSCRIBE_TIMEOUT_SECONDS,
    )
    if args.transcribe_timeout_seconds is not None:
        timeout_seconds = args.transcribe_timeout_seconds
    presets_file = args.presets_file or read_env_text(env, PRESETS_FILE_ENV)
    return RuntimeConfig(
        ffmpeg_path=ffmpeg_path or DEFAULT_FFMPEG_PATH,
        ffprobe_path=ffprobe_path or DEFAULT_FFPROBE_PATH,
        fonts_dir=fonts_dir,
        transcribe_url=transcribe_url,
        transcribe_token=read_env_text(env, TRANSCRIBE_TOKEN_ENV),
        transcribe_timeout_seconds=timeout_seconds,
        presets_file=Path(presets_file) if presets_file else None,
    )
