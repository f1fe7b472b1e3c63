from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

SAMPLE_RATE = 24000
SAMPLE_WIDTH = 2
CHANNELS = 1


class PageStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    EXTRACTED = "extracted"
    SYNTHESIZING = "synthesizing"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class RawMaterial:
    """Rendered image and fallback text for a page, produced once."""

    image: Optional[bytes]
    raw_text: str
    image_mime: str = "image/jpeg"


@dataclass(frozen=True)
class AudioSegment:
    text: str
    start_time: float
    duration: float
    is_silence: bool = False

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def as_dict(self) -> Dict[str, object]:
        return {
            "text": self.text,
            "startTime": self.start_time,
            "duration": self.duration,
            "isSilence": self.is_silence,
        }


class Waveform:
    """A synthesized WAV container spilled to disk.

    The handle owns the file; ``release`` deletes it and is idempotent.
    """

    def __init__(self, path: Path, *, sample_count: int, sample_rate: int = SAMPLE_RATE) -> None:
        self.path = Path(path)
        self.sample_count = sample_count
        self.sample_rate = sample_rate
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def duration(self) -> float:
        return self.sample_count / float(self.sample_rate) if self.sample_rate else 0.0

    def read_bytes(self) -> bytes:
        if self._released:
            raise RuntimeError(f"Waveform {self.path.name} has been released")
        return self.path.read_bytes()

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Unable to remove waveform %s: %s", self.path, exc)

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"Waveform({self.path.name!r}, {self.duration:.2f}s, {state})"


@dataclass(frozen=True)
class PageAudio:
    waveform: Waveform
    segments: Tuple[AudioSegment, ...]
    sentences: Tuple[AudioSegment, ...] = ()

    @property
    def duration(self) -> float:
        return self.waveform.duration


@dataclass(frozen=True)
class Page:
    page_number: int
    status: PageStatus = PageStatus.PENDING
    raw_material: Optional[RawMaterial] = None
    cleaned_text: str = ""
    audio: Optional[PageAudio] = None
    error: Optional[str] = None

    @property
    def has_audio(self) -> bool:
        return self.audio is not None

    def as_dict(self) -> Dict[str, object]:
        return {
            "pageNumber": self.page_number,
            "status": self.status.value,
            "originalText": self.cleaned_text,
            "hasAudio": self.has_audio,
            "segments": [segment.as_dict() for segment in self.audio.segments] if self.audio else [],
            "error": self.error,
        }


@dataclass
class ProcessingState:
    total_pages: int
    processed_pages: int
    is_processing: bool
    active_extraction_batches: int = 0
    active_synthesis_batches: int = 0
    counts_by_status: Dict[str, int] = field(default_factory=dict)


def pages_with_text(pages: List[Page]) -> List[Page]:
    return [page for page in sorted(pages, key=lambda item: item.page_number) if page.cleaned_text.strip()]
