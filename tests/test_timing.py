from __future__ import annotations

import pytest

from conftest import pcm, silence, tone
from pagenarrator.timing import (
    SEEK_SAFETY_BUFFER,
    anchor_sentences,
    decode_pcm16,
    detect_silence_boundaries,
    reconstruct_timing,
    seek_position,
    split_sentences,
    token_weight,
)


def test_split_sentences_keeps_trailing_whitespace_and_drops_blank_units():
    assert split_sentences("Hello there. How are you?\nFine") == ["Hello there. ", "How are you?\n", "Fine"]
    assert split_sentences("   ") == []


def test_silence_boundary_marks_end_of_pause():
    samples = decode_pcm16(pcm(tone(1.0), silence(0.5), tone(1.0)))

    boundaries = detect_silence_boundaries(samples)

    assert boundaries == [pytest.approx(1.5)]
    assert type(boundaries[0]) is float


def test_short_pause_does_not_count():
    samples = decode_pcm16(pcm(tone(1.0), silence(0.25), tone(1.0)))

    assert detect_silence_boundaries(samples) == []


def test_leading_and_trailing_silence_produce_no_boundary():
    samples = decode_pcm16(pcm(silence(0.5), tone(1.0), silence(0.5)))

    assert detect_silence_boundaries(samples) == []


def test_token_weight_adds_punctuation_bonus():
    assert token_weight("word") == 4
    assert token_weight("word,") == 5 + 3
    assert token_weight("word;") == 5 + 4
    assert token_weight("word.") == 5 + 5
    assert token_weight("   ") == 0


def test_unmatched_sentences_merge_into_tail_span():
    spans = anchor_sentences(["One. ", "Two. ", "Three."], [1.0], 3.0)

    assert [span.text for span in spans] == ["One. ", "Two. Three."]
    assert spans[0].start_time == 0.0
    assert spans[0].duration == pytest.approx(1.0)
    assert spans[1].start_time == pytest.approx(1.0)
    assert spans[1].end_time == pytest.approx(3.0)


def test_surplus_boundaries_are_ignored():
    spans = anchor_sentences(["One. ", "Two."], [1.0, 2.0, 2.5], 3.0)

    assert [span.end_time for span in spans] == [pytest.approx(1.0), pytest.approx(3.0)]


def test_reconstruct_timing_anchors_words_to_silence():
    text = "Hi there. Bye now."
    audio = pcm(tone(1.0), silence(0.5), tone(1.0))

    result = reconstruct_timing(audio, text)

    assert result.duration == pytest.approx(2.5)
    assert result.boundaries == (pytest.approx(1.5),)
    assert [span.text for span in result.sentences] == ["Hi there. ", "Bye now."]
    words = [segment for segment in result.segments if not segment.is_silence]
    assert [word.text for word in words] == ["Hi", "there.", "Bye", "now."]
    bye = words[2]
    assert bye.start_time == pytest.approx(1.5)
    assert type(bye.start_time) is float
    assert words[-1].end_time == pytest.approx(2.5)


def test_segments_cover_text_and_whitespace_has_no_duration():
    text = "Alpha beta, gamma."
    result = reconstruct_timing(pcm(tone(2.0)), text)

    assert "".join(segment.text for segment in result.segments) == text
    spaces = [segment for segment in result.segments if segment.is_silence]
    assert spaces and all(segment.duration == 0.0 for segment in spaces)
    assert sum(segment.duration for segment in result.segments) == pytest.approx(2.0)
    starts = [segment.start_time for segment in result.segments]
    assert starts == sorted(starts)


def test_zero_boundaries_weight_whole_page_by_length():
    result = reconstruct_timing(pcm(tone(1.0)), "aaaa bbbbbbbbbbbb")

    first, _space, second = result.segments
    assert first.duration == pytest.approx(0.25)
    assert second.duration == pytest.approx(0.75)


def test_empty_audio_yields_zero_duration_segments():
    result = reconstruct_timing(b"", "Nothing here.")

    assert result.duration == 0.0
    assert all(segment.duration == 0.0 for segment in result.segments)


def test_seek_position_backs_off_and_floors_at_zero():
    result = reconstruct_timing(pcm(tone(1.0), silence(0.5), tone(1.0)), "Hi there. Bye now.")
    words = list(result.segments)

    assert seek_position(words, 0) == 0.0
    bye_index = next(index for index, segment in enumerate(words) if segment.text == "Bye")
    assert seek_position(words, bye_index) == pytest.approx(1.5 - SEEK_SAFETY_BUFFER)
    assert seek_position([], 3) == 0.0
