from __future__ import annotations

import asyncio
from typing import Dict

import pytest

from conftest import FakeSynthesizer
from pagenarrator.ledger import PageLedger
from pagenarrator.models import PageStatus
from pagenarrator.rate_limiter import RateLimitedTaskQueue
from pagenarrator.synthesis import VOICE_PREVIEW_TEXT, select_synthesis_batch, synthesize_voice_preview
from pagenarrator.wav import parse_header


def _ledger(texts: Dict[int, str], total: int) -> PageLedger:
    ledger = PageLedger(total)
    for number, text in texts.items():
        ledger.transition(number, PageStatus.ANALYZING)
        ledger.transition(number, PageStatus.EXTRACTED, cleaned_text=text)
    return ledger


def test_batch_is_bounded_by_character_budget():
    ledger = _ledger({1: "a" * 2000, 2: "b" * 2000, 3: "c" * 2000}, 3)

    assert select_synthesis_batch(ledger, 1, 4500) == [1, 2]


def test_oversized_first_page_is_sent_alone():
    ledger = _ledger({1: "a" * 6000, 2: "b" * 10}, 2)

    assert select_synthesis_batch(ledger, 1, 4500) == [1]


def test_batch_starts_at_current_page_and_wraps_to_the_start():
    ledger = _ledger({2: "early", 7: "late", 8: "later"}, 10)

    assert select_synthesis_batch(ledger, 5, 4500) == [7, 8]
    assert select_synthesis_batch(ledger, 9, 4500) == [2]


def test_batch_requires_consecutive_extracted_pages():
    ledger = _ledger({1: "one", 2: "two", 4: "four"}, 4)
    ledger.transition(3, PageStatus.ANALYZING)

    assert select_synthesis_batch(ledger, 1, 4500) == [1, 2]


def test_no_batch_without_extracted_pages():
    assert select_synthesis_batch(PageLedger(3), 1, 4500) == []


def test_voice_preview_is_wrapped_in_a_wav_container():
    synthesizer = FakeSynthesizer(seconds=0.1)
    queue = RateLimitedTaskQueue(max_concurrent=1, min_interval=0.0)

    container = asyncio.run(synthesize_voice_preview(synthesizer, "onyx", queue=queue))

    header = parse_header(container)
    assert header.sample_rate == 24000
    assert header.data_length == 2 * 2400
    assert synthesizer.calls == [VOICE_PREVIEW_TEXT["en"]]
    assert synthesizer.voices == ["onyx"]
    assert queue.active == 0


def test_voice_preview_rejects_unknown_language():
    with pytest.raises(ValueError):
        asyncio.run(synthesize_voice_preview(FakeSynthesizer(), "alloy", language="fr"))
