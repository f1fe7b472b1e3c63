from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Iterable, List, Union

import numpy as np
import soundfile as sf

from pagenarrator.models import Page, PageStatus, Waveform, pages_with_text
from pagenarrator.wav import concatenate_wavs, parse_header, pcm_payload

logger = logging.getLogger(__name__)

_PAGE_MARKER_RE = re.compile(r"--- Page \d+ ---")
_SENTENCE_STOPPER_RE = re.compile(r"[.!?:]['\"]?$")
_LOWERCASE_START_RE = re.compile(r"^[a-z]")

_SOUNDFILE_FORMATS = {
    ".flac": "FLAC",
    ".ogg": "OGG",
}


def build_transcript(pages: Iterable[Page]) -> str:
    blocks = [f"--- Page {page.page_number} ---\n\n{page.cleaned_text.strip()}" for page in pages_with_text(list(pages))]
    return "\n\n".join(blocks)


def stitch_text(pages: Iterable[Page]) -> str:
    """Join page texts into one stream, repairing sentences split across pages.

    A trailing hyphen joins directly; an unfinished sentence followed by a
    lowercase start joins with a space; anything else is a paragraph break.
    """

    texts = [page.cleaned_text.strip() for page in pages_with_text(list(pages))]
    parts: List[str] = []
    for index, current in enumerate(texts):
        if index < len(texts) - 1:
            following = texts[index + 1]
            if current.endswith("-"):
                current = current[:-1]
            elif not _SENTENCE_STOPPER_RE.search(current) and _LOWERCASE_START_RE.match(following):
                current += " "
            else:
                current += "\n\n"
        parts.append(current)
    return _PAGE_MARKER_RE.sub("", "".join(parts))


def _narrated_waveforms(pages: Iterable[Page]) -> List[Waveform]:
    waveforms: List[Waveform] = []
    seen = set()
    for page in sorted(pages, key=lambda item: item.page_number):
        if page.status is not PageStatus.READY or page.audio is None:
            continue
        waveform = page.audio.waveform
        if id(waveform) in seen or waveform.released:
            continue
        seen.add(id(waveform))
        waveforms.append(waveform)
    return waveforms


def export_narration(pages: Iterable[Page], path: Union[str, Path]) -> Path:
    """Write every ready page's audio, in page order, to one file.

    ``.wav`` keeps the concatenated PCM container as-is; ``.flac`` and
    ``.ogg`` are re-encoded with soundfile.
    """

    destination = Path(path)
    waveforms = _narrated_waveforms(pages)
    if not waveforms:
        raise ValueError("No narrated pages are ready for export")

    combined = concatenate_wavs([waveform.read_bytes() for waveform in waveforms])
    destination.parent.mkdir(parents=True, exist_ok=True)
    suffix = destination.suffix.lower()
    if suffix == ".wav":
        destination.write_bytes(combined)
    elif suffix in _SOUNDFILE_FORMATS:
        header = parse_header(combined)
        samples = np.frombuffer(pcm_payload(combined), dtype="<i2")
        sf.write(str(destination), samples, header.sample_rate, format=_SOUNDFILE_FORMATS[suffix])
    else:
        raise ValueError(f"Unsupported narration format: {destination.suffix or '(none)'}")
    logger.info("Exported %s narrated segment(s) to %s", len(waveforms), destination)
    return destination


def export_timings(pages: Iterable[Page], path: Union[str, Path]) -> Path:
    """Write per-page status, text and word timings as JSON for a player."""

    destination = Path(path)
    destination.parent.mkdir(parents=True, exist_ok=True)
    payload = {"pages": [page.as_dict() for page in sorted(pages, key=lambda item: item.page_number)]}
    with open(destination, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)
    return destination
