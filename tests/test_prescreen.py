from __future__ import annotations

import asyncio
import json

import pytest

from pagenarrator.cancellation import CancellationScope, OperationCancelled
from pagenarrator.prescreen import EDGE_PAGES, PREVIEW_CHARS, analyze_document_structure


class _FakeCompletion:
    def __init__(self, payload=None, error=None, delay=0.0):
        self.payload = payload
        self.error = error
        self.delay = delay
        self.calls = []

    async def complete(self, system_message, user_message, *, json_mode=False):
        self.calls.append((system_message, user_message, json_mode))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.payload


def _pages(count, text="Some words on this page."):
    return [(number, text) for number in range(1, count + 1)]


def test_classification_selects_main_and_appendix():
    payload = json.dumps(
        {
            "pages": [
                {"pageNumber": 1, "category": "cover", "reasoning": "title page"},
                {"pageNumber": 2, "category": "toc", "reasoning": "contents"},
                {"pageNumber": 4, "category": "references", "reasoning": "bibliography"},
                {"pageNumber": 5, "category": "appendix", "reasoning": "extra tables"},
            ]
        }
    )
    client = _FakeCompletion(payload)

    result = asyncio.run(analyze_document_structure(_pages(5), client))

    assert [page.category for page in result.pages] == ["cover", "toc", "main", "references", "appendix"]
    assert result.selected_pages == [3, 5]
    assert result.total_selected == 2
    assert client.calls[0][2] is True


def test_bare_array_in_code_fence_is_accepted():
    payload = '```json\n[{"pageNumber": 2, "category": "blank"}]\n```'

    result = asyncio.run(analyze_document_structure(_pages(2), _FakeCompletion(payload)))

    assert result.selected_pages == [1]


def test_failure_falls_back_to_every_page_main():
    result = asyncio.run(analyze_document_structure(_pages(3), _FakeCompletion("not json")))

    assert all(page.category == "main" and page.selected for page in result.pages)
    assert result.total_selected == 3

    result = asyncio.run(analyze_document_structure(_pages(2), _FakeCompletion(error=RuntimeError("offline"))))
    assert result.total_selected == 2


def test_long_documents_only_send_edges_and_truncated_text():
    client = _FakeCompletion("[]")
    pages = _pages(50, text="x" * 2000)

    result = asyncio.run(analyze_document_structure(pages, client))

    message = client.calls[0][1]
    assert message.count("--- Page ") == 2 * EDGE_PAGES
    assert "--- Page 20 ---" in message
    assert "--- Page 21 ---" not in message
    assert "--- Page 31 ---" in message
    assert "x" * (PREVIEW_CHARS + 1) not in message
    assert result.total_selected == 50


def test_cancellation_is_not_swallowed():
    async def scenario():
        scope = CancellationScope()
        asyncio.get_running_loop().call_later(0.02, scope.cancel)
        await analyze_document_structure(_pages(2), _FakeCompletion("[]", delay=1.0), scope)

    with pytest.raises(OperationCancelled):
        asyncio.run(scenario())
