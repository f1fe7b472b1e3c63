from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

from pagenarrator.utils import load_config

SUPPORTED_LANGUAGES = ("en", "de")

# Voices offered by the default OpenAI-compatible speech endpoint. Other
# servers may accept different names; any string is passed through.
VOICE_PROFILES = (
    ("alloy", "Neutral and balanced"),
    ("ash", "Clear, masculine"),
    ("coral", "Warm, feminine"),
    ("echo", "Steady, masculine"),
    ("fable", "Narrative, expressive"),
    ("nova", "Bright, feminine"),
    ("onyx", "Deep, masculine"),
    ("sage", "Calm, measured"),
    ("shimmer", "Soft, feminine"),
)

_ENV_PREFIX = "PAGENARRATOR_"


@dataclass(frozen=True)
class SchedulerConfig:
    """Immutable tuning knobs for one narration session."""

    extraction_workers: int = 3
    extraction_batch_size: int = 3
    synthesis_workers: int = 3
    max_tts_chars: int = 4500
    text_only: bool = False
    voice: str = "alloy"
    language: str = "en"
    tts_max_concurrent: int = 3
    tts_min_interval: float = 0.3
    render_timeout: float = 15.0
    text_timeout: float = 10.0
    render_scale: float = 1.2
    jpeg_quality: int = 70

    def __post_init__(self) -> None:
        for name in (
            "extraction_workers",
            "extraction_batch_size",
            "synthesis_workers",
            "max_tts_chars",
            "tts_max_concurrent",
        ):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.tts_min_interval < 0:
            raise ValueError("tts_min_interval cannot be negative")
        if self.language not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported language: {self.language}")
        if not 1 <= int(self.jpeg_quality) <= 100:
            raise ValueError("jpeg_quality must be between 1 and 100")

    def with_overrides(self, **overrides: Any) -> "SchedulerConfig":
        cleaned = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **cleaned) if cleaned else self


@dataclass(frozen=True)
class ServiceSettings:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    extraction_model: str = "gpt-4o-mini"
    tts_model: str = "gpt-4o-mini-tts"
    timeout: float = 120.0

    def is_configured(self) -> bool:
        return bool(self.base_url.strip() and self.extraction_model.strip())


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


def _collect(cls, sources: list[Mapping[str, Any]]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    defaults = cls()
    for field_info in fields(cls):
        default = getattr(defaults, field_info.name)
        for source in sources:
            if field_info.name in source and source[field_info.name] not in (None, ""):
                values[field_info.name] = _coerce(source[field_info.name], default)
                break
    return values


def _environment_values(environ: Mapping[str, str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for key, value in environ.items():
        if key.startswith(_ENV_PREFIX):
            values[key[len(_ENV_PREFIX):].lower()] = value
    return values


def load_scheduler_config(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    stored: Optional[Mapping[str, Any]] = None,
) -> SchedulerConfig:
    env_values = _environment_values(os.environ if environ is None else environ)
    file_values = load_config() if stored is None else dict(stored)
    scheduler_section = file_values.get("scheduler", {}) if isinstance(file_values.get("scheduler"), Mapping) else {}
    values = _collect(SchedulerConfig, [dict(overrides or {}), env_values, scheduler_section])
    return SchedulerConfig(**values)


def load_service_settings(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    stored: Optional[Mapping[str, Any]] = None,
) -> ServiceSettings:
    env_values = _environment_values(os.environ if environ is None else environ)
    file_values = load_config() if stored is None else dict(stored)
    service_section = file_values.get("service", {}) if isinstance(file_values.get("service"), Mapping) else {}
    values = _collect(ServiceSettings, [dict(overrides or {}), env_values, service_section])
    return ServiceSettings(**values)
