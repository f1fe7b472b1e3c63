"""Per-sentence and per-word timing recovered from a single synthesized waveform.

True forced alignment is not available, so timing is rebuilt in two passes:
silence runs in the PCM stream anchor sentence boundaries, and inside each
anchored span words are spread by a character/punctuation weight. The error
of the second pass resets at every detected boundary.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from pagenarrator.models import SAMPLE_RATE, AudioSegment

SILENCE_THRESHOLD = 50
MIN_SILENCE_MS = 250
SEEK_SAFETY_BUFFER = 0.05

_SENTENCE_RE = re.compile(r".*?(?:[.!?]+|\n|$)\s*", re.DOTALL)
_TOKEN_SPLIT_RE = re.compile(r"(\s+)")

_PUNCTUATION_BONUS: Tuple[Tuple[Tuple[str, ...], int], ...] = (
    ((",",), 3),
    ((":", ";"), 4),
    ((".", "!", "?"), 5),
)


@dataclass(frozen=True)
class TimingResult:
    duration: float
    boundaries: Tuple[float, ...]
    sentences: Tuple[AudioSegment, ...]
    segments: Tuple[AudioSegment, ...]


def split_sentences(text: str) -> List[str]:
    """Split on terminal punctuation and newlines, dropping whitespace-only units."""

    units = [match.group(0) for match in _SENTENCE_RE.finditer(text or "")]
    return [unit for unit in units if unit.strip()]


def decode_pcm16(pcm: bytes) -> np.ndarray:
    usable = len(pcm) - (len(pcm) % 2)
    return np.frombuffer(pcm[:usable], dtype="<i2")


def detect_silence_boundaries(
    samples: np.ndarray,
    *,
    sample_rate: int = SAMPLE_RATE,
    threshold: int = SILENCE_THRESHOLD,
    min_silence_ms: float = MIN_SILENCE_MS,
) -> List[float]:
    """Timestamps (seconds) at the end of every qualifying silence run.

    A run qualifies when it is strictly longer than ``min_silence_ms`` and is
    followed by sound. Leading silence (a run starting at sample 0) does not
    produce a boundary.
    """

    if samples.size == 0:
        return []
    quiet = np.abs(samples.astype(np.int32)) < threshold
    min_samples = sample_rate * min_silence_ms / 1000.0

    padded = np.concatenate(([False], quiet, [False])).astype(np.int8)
    edges = np.diff(padded)
    starts = np.flatnonzero(edges == 1)
    ends = np.flatnonzero(edges == -1)

    boundaries: List[float] = []
    for start, end in zip(starts, ends):
        if start == 0 or end >= samples.size:
            continue
        if end - start > min_samples:
            boundaries.append(float(end) / sample_rate)
    return boundaries


def token_weight(token: str) -> int:
    if not token.strip():
        return 0
    weight = len(token)
    for marks, bonus in _PUNCTUATION_BONUS:
        if any(mark in token for mark in marks):
            weight += bonus
    return weight


def anchor_sentences(sentences: Sequence[str], boundaries: Sequence[float], duration: float) -> List[AudioSegment]:
    """Pair sentences with boundaries positionally.

    Sentences past the last usable boundary are merged into one tail span
    that runs to ``duration``; surplus boundaries are ignored.
    """

    if not sentences:
        return []
    usable: List[float] = []
    previous = 0.0
    for boundary in boundaries:
        clamped = min(max(boundary, 0.0), duration)
        if clamped <= previous or clamped >= duration:
            continue
        usable.append(clamped)
        previous = clamped

    anchored_count = min(len(usable), len(sentences) - 1)
    spans: List[AudioSegment] = []
    anchor = 0.0
    for index in range(anchored_count):
        end = usable[index]
        spans.append(AudioSegment(text=sentences[index], start_time=anchor, duration=end - anchor))
        anchor = end
    tail = "".join(sentences[anchored_count:])
    spans.append(AudioSegment(text=tail, start_time=anchor, duration=max(0.0, duration - anchor)))
    return spans


def distribute_words(span: AudioSegment) -> List[AudioSegment]:
    tokens = [token for token in _TOKEN_SPLIT_RE.split(span.text) if token]
    weights = [token_weight(token) for token in tokens]
    total = float(sum(weights))

    segments: List[AudioSegment] = []
    cumulative = 0
    for token, weight in zip(tokens, weights):
        if total <= 0:
            start = span.start_time
            end = span.start_time
        else:
            start = span.start_time + span.duration * (cumulative / total)
            end = span.start_time + span.duration * ((cumulative + weight) / total)
        cumulative += weight
        is_silence = weight == 0
        segments.append(
            AudioSegment(
                text=token,
                start_time=start,
                duration=0.0 if is_silence else max(0.0, end - start),
                is_silence=is_silence,
            )
        )
    return segments


def reconstruct_timing(
    pcm: bytes,
    text: str,
    *,
    sample_rate: int = SAMPLE_RATE,
    threshold: int = SILENCE_THRESHOLD,
    min_silence_ms: float = MIN_SILENCE_MS,
) -> TimingResult:
    samples = decode_pcm16(pcm)
    duration = samples.size / float(sample_rate) if sample_rate else 0.0
    boundaries = detect_silence_boundaries(
        samples,
        sample_rate=sample_rate,
        threshold=threshold,
        min_silence_ms=min_silence_ms,
    )
    sentences = split_sentences(text)
    spans = anchor_sentences(sentences, boundaries, duration)
    segments: List[AudioSegment] = []
    for span in spans:
        segments.extend(distribute_words(span))
    return TimingResult(
        duration=duration,
        boundaries=tuple(boundaries),
        sentences=tuple(spans),
        segments=tuple(segments),
    )


def seek_position(segments: Sequence[AudioSegment], word_index: int) -> float:
    """Playback position for a word, backed off slightly so its onset is not clipped."""

    if not segments:
        return 0.0
    if len(segments) == 1 or not 0 <= word_index < len(segments):
        target = segments[0].start_time
    else:
        target = segments[word_index].start_time
    return max(0.0, target - SEEK_SAFETY_BUFFER)
