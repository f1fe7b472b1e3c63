from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pagenarrator.cancellation import CancellationScope, OperationCancelled
from pagenarrator.llm_client import CompletionCollaborator

logger = logging.getLogger(__name__)

CATEGORIES = ("cover", "toc", "main", "references", "appendix", "blank")
SELECTED_CATEGORIES = frozenset({"main", "appendix"})

PREVIEW_CHARS = 800
FULL_SCAN_LIMIT = 40
EDGE_PAGES = 20

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

_SYSTEM_PROMPT = (
    "You classify the pages of a document before it is narrated. "
    "For every page you receive, answer with a JSON object {\"pages\": [...]} whose list holds "
    '{"pageNumber": <int>, "category": <one of cover, toc, main, references, appendix, blank>, '
    '"reasoning": <short string>}. Respond with JSON only.'
)


@dataclass(frozen=True)
class PrescreenPage:
    page_number: int
    category: str
    reasoning: str = ""
    selected: bool = True


@dataclass(frozen=True)
class PrescreenResult:
    pages: Tuple[PrescreenPage, ...]
    total_selected: int

    @property
    def selected_pages(self) -> List[int]:
        return [page.page_number for page in self.pages if page.selected]


def _sample_pages(pages: Sequence[Tuple[int, str]]) -> List[Tuple[int, str]]:
    ordered = sorted(pages, key=lambda item: item[0])
    if len(ordered) > FULL_SCAN_LIMIT:
        ordered = ordered[:EDGE_PAGES] + ordered[-EDGE_PAGES:]
    return [(number, (text or "")[:PREVIEW_CHARS]) for number, text in ordered]


def _build_user_message(sample: Sequence[Tuple[int, str]], total_pages: int) -> str:
    lines = [f"The document has {total_pages} pages."]
    for number, text in sample:
        lines.append(f"--- Page {number} ---")
        lines.append(text.strip() or "(no text)")
    return "\n".join(lines)


def _parse_classification(payload: str) -> List[Dict[str, Any]]:
    cleaned = _FENCE_RE.sub("", (payload or "").strip())
    data = json.loads(cleaned)
    if isinstance(data, dict):
        data = data.get("pages", [])
    if not isinstance(data, list):
        raise ValueError("Classification payload is not a list")
    return [entry for entry in data if isinstance(entry, dict)]


def _fallback(page_numbers: Sequence[int]) -> PrescreenResult:
    pages = tuple(PrescreenPage(number, "main", "", True) for number in sorted(page_numbers))
    return PrescreenResult(pages=pages, total_selected=len(pages))


def build_result(page_numbers: Sequence[int], entries: Sequence[Dict[str, Any]]) -> PrescreenResult:
    classified: Dict[int, Tuple[str, str]] = {}
    for entry in entries:
        try:
            number = int(entry.get("pageNumber"))
        except (TypeError, ValueError):
            continue
        category = str(entry.get("category") or "main").strip().lower()
        if category not in CATEGORIES:
            category = "main"
        classified[number] = (category, str(entry.get("reasoning") or ""))

    pages: List[PrescreenPage] = []
    for number in sorted(page_numbers):
        category, reasoning = classified.get(number, ("main", ""))
        pages.append(PrescreenPage(number, category, reasoning, category in SELECTED_CATEGORIES))
    return PrescreenResult(pages=tuple(pages), total_selected=sum(1 for page in pages if page.selected))


async def analyze_document_structure(
    pages: Sequence[Tuple[int, str]],
    client: CompletionCollaborator,
    scope: Optional[CancellationScope] = None,
) -> PrescreenResult:
    """Classify pages so front and back matter can be skipped.

    ``pages`` is a sequence of ``(page_number, raw_text)``. Pages the model
    does not mention are treated as main content. Any failure other than
    cancellation returns every page as selected main content.
    """

    page_numbers = [number for number, _ in pages]
    if not page_numbers:
        return PrescreenResult(pages=(), total_selected=0)
    scope = scope or CancellationScope("prescreen")
    sample = _sample_pages(pages)
    try:
        payload = await scope.run(
            client.complete(_SYSTEM_PROMPT, _build_user_message(sample, len(page_numbers)), json_mode=True)
        )
        entries = _parse_classification(payload)
    except OperationCancelled:
        raise
    except Exception as exc:
        logger.warning("Document pre-screen failed, keeping every page: %s", exc)
        return _fallback(page_numbers)
    result = build_result(page_numbers, entries)
    logger.info("Pre-screen selected %s of %s pages", result.total_selected, len(page_numbers))
    return result
