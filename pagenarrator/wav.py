"""Uncompressed PCM WAV containers: build, parse and concatenate."""

from __future__ import annotations

import struct
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Union

from pagenarrator.models import CHANNELS, SAMPLE_RATE, SAMPLE_WIDTH, Waveform

HEADER_SIZE = 44

_HEADER_STRUCT = struct.Struct("<4sI4s4sIHHIIHH4sI")


@dataclass(frozen=True)
class WavHeader:
    sample_rate: int
    channels: int
    bits_per_sample: int
    data_length: int

    @property
    def riff_length(self) -> int:
        return 36 + self.data_length

    @property
    def frame_count(self) -> int:
        frame_size = self.channels * (self.bits_per_sample // 8)
        return self.data_length // frame_size if frame_size else 0


def build_header(
    data_length: int,
    *,
    sample_rate: int = SAMPLE_RATE,
    channels: int = CHANNELS,
    bits_per_sample: int = SAMPLE_WIDTH * 8,
) -> bytes:
    block_align = channels * bits_per_sample // 8
    return _HEADER_STRUCT.pack(
        b"RIFF",
        36 + data_length,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits_per_sample,
        b"data",
        data_length,
    )


def build_wav(pcm: bytes, *, sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS, bits_per_sample: int = 16) -> bytes:
    return build_header(len(pcm), sample_rate=sample_rate, channels=channels, bits_per_sample=bits_per_sample) + bytes(pcm)


def parse_header(container: bytes) -> WavHeader:
    if len(container) < HEADER_SIZE:
        raise ValueError("WAV container is shorter than its header")
    (
        riff,
        _riff_length,
        wave,
        fmt,
        _fmt_length,
        audio_format,
        channels,
        sample_rate,
        _byte_rate,
        _block_align,
        bits_per_sample,
        data_tag,
        data_length,
    ) = _HEADER_STRUCT.unpack_from(container, 0)
    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data_tag != b"data":
        raise ValueError("Not a canonical PCM WAV container")
    if audio_format != 1:
        raise ValueError(f"Unsupported WAV audio format {audio_format}")
    return WavHeader(
        sample_rate=sample_rate,
        channels=channels,
        bits_per_sample=bits_per_sample,
        data_length=data_length,
    )


def pcm_payload(container: bytes) -> bytes:
    header = parse_header(container)
    return container[HEADER_SIZE:HEADER_SIZE + header.data_length]


def concatenate_wavs(containers: Sequence[bytes]) -> bytes:
    """Join containers by keeping the first header and rewriting its length fields."""

    if not containers:
        raise ValueError("Nothing to concatenate")
    first = containers[0]
    parse_header(first)
    payloads = [container[HEADER_SIZE:] for container in containers]
    total = sum(len(payload) for payload in payloads)
    header = bytearray(first[:HEADER_SIZE])
    struct.pack_into("<I", header, 4, 36 + total)
    struct.pack_into("<I", header, 40, total)
    return bytes(header) + b"".join(payloads)


def pcm_duration(byte_length: int, *, sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS) -> float:
    return byte_length / float(sample_rate * channels * SAMPLE_WIDTH)


class WaveformStore:
    """Writes synthesized containers into a session directory."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def store(self, page_number: int, pcm: bytes, *, sample_rate: int = SAMPLE_RATE) -> Waveform:
        if len(pcm) % SAMPLE_WIDTH:
            pcm = pcm[:-1]
        path = self.directory / f"page_{page_number:04d}_{uuid.uuid4().hex[:8]}.wav"
        path.write_bytes(build_wav(pcm, sample_rate=sample_rate))
        return Waveform(path, sample_count=len(pcm) // SAMPLE_WIDTH, sample_rate=sample_rate)

    def clear(self) -> int:
        removed = 0
        for path in self.directory.glob("page_*.wav"):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
        return removed
