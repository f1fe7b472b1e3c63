from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence

import numpy as np
import pytest

from pagenarrator.llm_client import PAGE_BREAK_TOKEN, ExtractionRequestPage
from pagenarrator.retry import RetryPolicy

FAST_RETRY = RetryPolicy(
    transient_attempts=2,
    transient_base_delay=0.0,
    transient_max_delay=0.0,
    quota_attempts=2,
    quota_base_delay=0.0,
    quota_jitter=0.0,
)


@pytest.fixture(autouse=True)
def isolated_user_dirs(monkeypatch, tmp_path):
    import pagenarrator.utils as utils

    monkeypatch.setenv("PAGENARRATOR_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("PAGENARRATOR_SETTINGS_DIR", str(tmp_path / "settings"))
    utils.get_user_cache_root.cache_clear()
    utils.get_user_settings_dir.cache_clear()
    yield
    utils.get_user_cache_root.cache_clear()
    utils.get_user_settings_dir.cache_clear()


def tone(seconds: float, *, amplitude: int = 8000, sample_rate: int = 24000) -> np.ndarray:
    count = int(round(seconds * sample_rate))
    return np.full(count, amplitude, dtype="<i2")


def silence(seconds: float, *, sample_rate: int = 24000) -> np.ndarray:
    return np.zeros(int(round(seconds * sample_rate)), dtype="<i2")


def pcm(*parts: np.ndarray) -> bytes:
    return np.concatenate(parts).astype("<i2").tobytes() if parts else b""


class FakeDocument:
    """In-memory page source with optional per-page failures and delays."""

    def __init__(
        self,
        texts: Sequence[str],
        *,
        render_failures: Sequence[int] = (),
        render_delay: float = 0.0,
    ) -> None:
        self.texts = list(texts)
        self.render_failures = set(render_failures)
        self.render_delay = render_delay
        self.rendered: List[int] = []
        self.closed = False

    @property
    def page_count(self) -> int:
        return len(self.texts)

    def render_page(self, page_number: int) -> bytes:
        if self.render_delay:
            import time

            time.sleep(self.render_delay)
        if page_number in self.render_failures:
            raise RuntimeError(f"cannot rasterize page {page_number}")
        self.rendered.append(page_number)
        return f"jpeg-{page_number}".encode("ascii")

    def extract_raw_text(self, page_number: int) -> str:
        return self.texts[page_number - 1]

    def close(self) -> None:
        self.closed = True


class FakeExtractor:
    """Echoes each page's raw text back as its cleaned section."""

    def __init__(
        self,
        *,
        delay: float = 0.0,
        overrides: Optional[Dict[int, str]] = None,
        failures: Optional[List[BaseException]] = None,
        fail_pages: Sequence[int] = (),
        error: Optional[BaseException] = None,
    ) -> None:
        self.delay = delay
        self.overrides = dict(overrides or {})
        self.failures = list(failures or [])
        self.fail_pages = set(fail_pages)
        self.error = error
        self.calls: List[List[int]] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def extract_batch(self, pages: Sequence[ExtractionRequestPage], *, language: str) -> str:
        numbers = [page.page_number for page in pages]
        self.calls.append(numbers)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                raise self.failures.pop(0)
            if self.error is not None and self.fail_pages & set(numbers):
                raise self.error
            sections = [self.overrides.get(page.page_number, page.raw_text.upper()) for page in pages]
            return PAGE_BREAK_TOKEN.join(sections)
        finally:
            self.in_flight -= 1


class FakeSynthesizer:
    """Returns a short tone per request; texts listed in ``fail_texts`` raise ``error``."""

    def __init__(
        self,
        *,
        delay: float = 0.0,
        delays: Optional[Dict[str, float]] = None,
        seconds: float = 0.5,
        fail_texts: Sequence[str] = (),
        error: Optional[BaseException] = None,
        failures: Optional[List[BaseException]] = None,
    ) -> None:
        self.delay = delay
        self.delays = dict(delays or {})
        self.seconds = seconds
        self.fail_texts = set(fail_texts)
        self.error = error
        self.failures = list(failures or [])
        self.calls: List[str] = []
        self.voices: List[str] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    async def synthesize(self, text: str, *, voice: str) -> bytes:
        self.calls.append(text)
        self.voices.append(voice)
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            delay = self.delays.get(text, self.delay)
            if delay:
                await asyncio.sleep(delay)
            if self.failures:
                raise self.failures.pop(0)
            if text in self.fail_texts and self.error is not None:
                raise self.error
            return pcm(tone(self.seconds))
        finally:
            self.in_flight -= 1
