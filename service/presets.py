"""Named style presets and their JSON file store."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol, Sequence, Tuple

from domain.captions import (
    INVALID_PRESET_CODE,
    CaptionValidationError,
    Preset,
    StyleSpec,
    style_from_mapping,
    style_to_mapping,
)

LOGGER = logging.getLogger("presets")

PRESETS_KEY = "greenCapAIPresets"
PRESETS_LOAD_CODE = "caption_video.presets.load_failed"
PRESETS_SAVE_CODE = "caption_video.presets.save_failed"


class PresetStore(Protocol):
    """Persistence for the preset list."""

    def load(self) -> Tuple[Preset, ...]:
        ...

    def save(self, presets: Sequence[Preset]) -> None:
        ...


def add_preset(
    presets: Sequence[Preset], name: str, options: StyleSpec
) -> Tuple[Preset, ...]:
    """Append a preset; the trimmed name must be non-empty and unique."""
    trimmed = name.strip()
    if not trimmed or any(preset.name == trimmed for preset in presets):
        raise CaptionValidationError(
            INVALID_PRESET_CODE, "Please enter a unique preset name."
        )
    return (*presets, Preset(name=trimmed, options=options))


def remove_preset(presets: Sequence[Preset], name: str) -> Tuple[Preset, ...]:
    """Return presets without the named one."""
    return tuple(preset for preset in presets if preset.name != name)


def find_preset(presets: Sequence[Preset], name: str) -> Preset | None:
    """Return the preset with a name, if any."""
    return next((preset for preset in presets if preset.name == name), None)


def presets_to_document(presets: Sequence[Preset]) -> dict[str, object]:
    """Build the interchange document for a preset list."""
    return {
        PRESETS_KEY: [
            {"name": preset.name, "options": style_to_mapping(preset.options)}
            for preset in presets
        ]
    }


def presets_from_document(document: object) -> Tuple[Preset, ...]:
    """Parse presets from the interchange document."""
    if not isinstance(document, dict) or not isinstance(document.get(PRESETS_KEY), list):
        raise CaptionValidationError(
            INVALID_PRESET_CODE, f"document must contain a {PRESETS_KEY} list"
        )
    presets: list[Preset] = []
    for entry in document[PRESETS_KEY]:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            raise CaptionValidationError(INVALID_PRESET_CODE, "preset entry is invalid")
        options = entry.get("options", {})
        if not isinstance(options, dict):
            raise CaptionValidationError(
                INVALID_PRESET_CODE, f"preset {entry['name']!r} options are invalid"
            )
        presets.append(Preset(name=entry["name"], options=style_from_mapping(options)))
    return tuple(presets)


class JsonFilePresetStore:
    """Keep presets in a single JSON document on disk."""

    def __init__(self, file_path: Path) -> None:
        self.file_path = file_path

    def load(self) -> Tuple[Preset, ...]:
        """Load presets; a missing or unreadable file yields no presets."""
        if not self.file_path.exists():
            return ()
        try:
            document = json.loads(self.file_path.read_text(encoding="utf-8"))
            return presets_from_document(document)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError, CaptionValidationError) as exc:
            LOGGER.warning("%s: %s: %s", PRESETS_LOAD_CODE, self.file_path, exc)
            return ()

    def save(self, presets: Sequence[Preset]) -> None:
        """Rewrite the document with the given presets."""
        try:
            self.file_path.write_text(
                json.dumps(presets_to_document(presets), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
        except OSError as exc:
            raise CaptionValidationError(
                PRESETS_SAVE_CODE, f"failed to write presets: {self.file_path}"
            ) from exc
