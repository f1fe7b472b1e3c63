from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from pagenarrator.config import ServiceSettings
from pagenarrator.llm_client import (
    PAGE_BREAK_TOKEN,
    ExtractionRequestPage,
    OpenAICompatibleClient,
    _build_url,
    build_extraction_content,
)
from pagenarrator.retry import CollaboratorError, EmptyResultError, QuotaExceededError, TransientCollaboratorError


def _settings(**overrides) -> ServiceSettings:
    values = {"base_url": "https://llm.example.test/v1", "api_key": "secret", "extraction_model": "vision-1"}
    values.update(overrides)
    return ServiceSettings(**values)


def _chat_response(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


def test_build_url_avoids_duplicate_version_segment():
    assert _build_url("https://llm.example.test/v1", "v1/chat/completions") == "https://llm.example.test/v1/chat/completions"
    assert _build_url("http://localhost:11434", "v1/audio/speech") == "http://localhost:11434/v1/audio/speech"


def test_extraction_content_frames_each_page():
    pages = [
        ExtractionRequestPage(page_number=3, image=b"img", raw_text="raw three"),
        ExtractionRequestPage(page_number=4, image=None, raw_text="raw four"),
    ]

    content = build_extraction_content(pages, "en")

    texts = [part["text"] for part in content if part["type"] == "text"]
    images = [part for part in content if part["type"] == "image_url"]
    assert "--- START PAGE 3 ---" in texts[0]
    assert 'Context Text for Page 4: "raw four"' in texts[3]
    assert len(images) == 1
    assert images[0]["image_url"]["url"].startswith("data:image/jpeg;base64,")
    assert PAGE_BREAK_TOKEN in texts[-1]


def test_extract_batch_posts_chat_completion():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return _chat_response(f"one{PAGE_BREAK_TOKEN}two")

    async def scenario():
        async with OpenAICompatibleClient(_settings(), transport=httpx.MockTransport(handler)) as client:
            pages = [ExtractionRequestPage(1, b"a", "x"), ExtractionRequestPage(2, b"b", "y")]
            return await client.extract_batch(pages, language="de")

    blob = asyncio.run(scenario())

    assert blob == f"one{PAGE_BREAK_TOKEN}two"
    assert captured["url"] == "https://llm.example.test/v1/chat/completions"
    assert captured["auth"] == "Bearer secret"
    assert captured["body"]["model"] == "vision-1"
    assert "GERMAN" in captured["body"]["messages"][0]["content"]


def test_complete_requests_json_mode():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return _chat_response('{"pages": []}')

    async def scenario():
        async with OpenAICompatibleClient(_settings(), transport=httpx.MockTransport(handler)) as client:
            return await client.complete("system", "user", json_mode=True)

    assert asyncio.run(scenario()) == '{"pages": []}'
    assert captured["body"]["response_format"] == {"type": "json_object"}


def test_synthesize_returns_raw_pcm():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, content=b"\x01\x00\x02\x00")

    async def scenario():
        async with OpenAICompatibleClient(_settings(tts_model="speech-1"), transport=httpx.MockTransport(handler)) as client:
            return await client.synthesize("Hello.", voice="nova")

    assert asyncio.run(scenario()) == b"\x01\x00\x02\x00"
    assert captured["url"].endswith("/v1/audio/speech")
    assert captured["body"] == {"model": "speech-1", "input": "Hello.", "voice": "nova", "response_format": "pcm"}


@pytest.mark.parametrize(
    "response, expected",
    [
        (httpx.Response(429, text="slow down"), QuotaExceededError),
        (httpx.Response(503, text="overloaded"), TransientCollaboratorError),
        (httpx.Response(200, content=b""), EmptyResultError),
    ],
)
def test_synthesize_maps_failures(response, expected):
    async def scenario():
        transport = httpx.MockTransport(lambda request: response)
        async with OpenAICompatibleClient(_settings(), transport=transport) as client:
            await client.synthesize("Hello.", voice="alloy")

    with pytest.raises(expected):
        asyncio.run(scenario())


def test_client_requires_configuration():
    with pytest.raises(CollaboratorError):
        OpenAICompatibleClient(_settings(extraction_model=""))
