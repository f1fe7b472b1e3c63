from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence
from urllib import parse

import httpx

from pagenarrator.config import ServiceSettings
from pagenarrator.retry import CollaboratorError, EmptyResultError, classify_http_error

logger = logging.getLogger(__name__)

PAGE_BREAK_TOKEN = "---PAGE_BREAK---"
EMPTY_PAGE_TOKEN = "[[EMPTY]]"
SKIPPED_SECTION_TOKEN = "[[SKIPPED_SECTION]]"


@dataclass(frozen=True)
class ExtractionRequestPage:
    page_number: int
    image: Optional[bytes]
    raw_text: str
    image_mime: str = "image/jpeg"


class ExtractionCollaborator(Protocol):
    async def extract_batch(self, pages: Sequence[ExtractionRequestPage], *, language: str) -> str: ...


class SynthesisCollaborator(Protocol):
    async def synthesize(self, text: str, *, voice: str) -> bytes: ...


class CompletionCollaborator(Protocol):
    async def complete(self, system_message: str, user_message: str, *, json_mode: bool = False) -> str: ...


_DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


def _normalized_base_url(base_url: str) -> str:
    trimmed = (base_url or "").strip()
    if not trimmed:
        raise CollaboratorError("Service base URL is required")
    if not trimmed.endswith("/"):
        trimmed += "/"
    return trimmed


def _build_url(base_url: str, path: str) -> str:
    normalized = _normalized_base_url(base_url)
    trimmed_path = path.lstrip("/")
    parsed = parse.urlparse(normalized)
    if parsed.path.rstrip("/").lower().endswith("/v1") and trimmed_path.startswith("v1/"):
        trimmed_path = trimmed_path[len("v1/"):]
    return parse.urljoin(normalized, trimmed_path)


def _build_headers(api_key: str) -> Dict[str, str]:
    headers = dict(_DEFAULT_HEADERS)
    token = (api_key or "").strip()
    if token and token.lower() != "ollama":
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _system_instruction(language: str) -> str:
    target = "IN GERMAN (translate where needed)" if language == "de" else "in the document's language"
    return (
        "You turn academic PDF pages into a natural narration script "
        f"{target}.\n"
        "- Break the script into short paragraphs separated by blank lines.\n"
        "- Repair sentences split by figures, tables or page boundaries.\n"
        "- Summarise formulas and citations instead of reading them verbatim.\n"
        "- Use Markdown headers for section titles.\n"
        f"OUTPUT FORMAT: separate pages with \"{PAGE_BREAK_TOKEN}\". "
        f"If a page has nothing worth narrating, write \"{EMPTY_PAGE_TOKEN}\"."
    )


def build_extraction_content(pages: Sequence[ExtractionRequestPage], language: str) -> List[Dict[str, Any]]:
    """Assemble the multi-part user message for one extraction batch."""

    content: List[Dict[str, Any]] = []
    for page in pages:
        content.append({"type": "text", "text": f"\n\n--- START PAGE {page.page_number} ---\n"})
        if page.image:
            encoded = base64.b64encode(page.image).decode("ascii")
            content.append(
                {"type": "image_url", "image_url": {"url": f"data:{page.image_mime};base64,{encoded}"}}
            )
        content.append({"type": "text", "text": f'Context Text for Page {page.page_number}: "{page.raw_text}"\n'})
    verb = "TRANSLATE and Transcribe" if language == "de" else "Transcribe"
    content.append(
        {
            "type": "text",
            "text": f'\n\nTask: {verb} these {len(pages)} pages. Separate each page with "{PAGE_BREAK_TOKEN}".',
        }
    )
    return content


def _first_choice_text(response: Any) -> str:
    if not isinstance(response, Mapping):
        raise CollaboratorError("Unexpected response from extraction service")
    choices = response.get("choices")
    if not isinstance(choices, list) or not choices:
        raise CollaboratorError("Extraction response did not include choices")
    first = choices[0]
    if not isinstance(first, Mapping):
        raise CollaboratorError("Extraction response choice was invalid")
    message = first.get("message")
    if isinstance(message, Mapping) and isinstance(message.get("content"), str):
        return message["content"]
    text = first.get("text")
    if isinstance(text, str):
        return text
    return ""


class OpenAICompatibleClient:
    """Extraction, completion and speech calls against an OpenAI-compatible API.

    One ``httpx.AsyncClient`` is shared by every call in a session; HTTP
    failures are translated into the collaborator error taxonomy so the
    retry layer can classify them.
    """

    def __init__(
        self,
        settings: ServiceSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_output_tokens: int = 8192,
    ) -> None:
        if not settings.is_configured():
            raise CollaboratorError("Service configuration is incomplete")
        self._settings = settings
        self._max_output_tokens = max_output_tokens
        self._client = httpx.AsyncClient(
            headers=_build_headers(settings.api_key),
            timeout=settings.timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OpenAICompatibleClient":
        return self

    async def __aexit__(self, *_exc) -> None:
        await self.aclose()

    async def _post(self, path: str, payload: Mapping[str, Any]) -> httpx.Response:
        url = _build_url(self._settings.base_url, path)
        try:
            response = await self._client.post(url, json=dict(payload))
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise classify_http_error(exc) from exc
        return response

    async def _chat(self, messages: List[Dict[str, Any]], **extra: Any) -> str:
        payload: Dict[str, Any] = {
            "model": self._settings.extraction_model,
            "messages": messages,
            "max_tokens": self._max_output_tokens,
        }
        payload.update(extra)
        response = await self._post("v1/chat/completions", payload)
        try:
            body = response.json()
        except ValueError as exc:
            raise CollaboratorError("Extraction response was not valid JSON") from exc
        return _first_choice_text(body)

    async def extract_batch(self, pages: Sequence[ExtractionRequestPage], *, language: str) -> str:
        messages = [
            {"role": "system", "content": _system_instruction(language)},
            {"role": "user", "content": build_extraction_content(pages, language)},
        ]
        return await self._chat(messages)

    async def complete(self, system_message: str, user_message: str, *, json_mode: bool = False) -> str:
        messages = [
            {"role": "system", "content": system_message},
            {"role": "user", "content": user_message},
        ]
        extra: Dict[str, Any] = {"temperature": 0.2}
        if json_mode:
            extra["response_format"] = {"type": "json_object"}
        return await self._chat(messages, **extra)

    async def synthesize(self, text: str, *, voice: str) -> bytes:
        """Return raw 24 kHz mono 16-bit little-endian PCM for ``text``."""

        payload = {
            "model": self._settings.tts_model,
            "input": text,
            "voice": voice,
            "response_format": "pcm",
        }
        response = await self._post("v1/audio/speech", payload)
        audio = response.content
        if not audio:
            raise EmptyResultError("Empty audio response")
        return audio
