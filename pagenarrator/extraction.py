from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from pagenarrator.cancellation import CancellationScope, OperationCancelled
from pagenarrator.config import SchedulerConfig
from pagenarrator.document import PageSource
from pagenarrator.ledger import DispatchSet, PageLedger
from pagenarrator.llm_client import (
    EMPTY_PAGE_TOKEN,
    PAGE_BREAK_TOKEN,
    SKIPPED_SECTION_TOKEN,
    ExtractionCollaborator,
    ExtractionRequestPage,
)
from pagenarrator.models import PageStatus, RawMaterial
from pagenarrator.render import RenderError, RenderSerializer
from pagenarrator.retry import EXTRACTION_RETRY_POLICY, QuotaExceededError, RetryPolicy, call_with_retries

logger = logging.getLogger(__name__)

_SENTINELS = (EMPTY_PAGE_TOKEN, SKIPPED_SECTION_TOKEN)


def demultiplex_sections(blob: str, page_numbers: Sequence[int]) -> Dict[int, Optional[str]]:
    """Assign delimiter-separated sections to pages positionally.

    A section that only holds the empty-page sentinel maps to ``""``. A
    missing or blank section maps to ``None`` so the caller can fall back to
    the raw text. Extra sections are ignored.
    """

    sections = (blob or "").split(PAGE_BREAK_TOKEN)
    results: Dict[int, Optional[str]] = {}
    for index, page_number in enumerate(page_numbers):
        if index >= len(sections):
            results[page_number] = None
            continue
        section = sections[index]
        had_sentinel = any(token in section for token in _SENTINELS)
        for token in _SENTINELS:
            section = section.replace(token, "")
        section = section.strip()
        if section:
            results[page_number] = section
        elif had_sentinel:
            results[page_number] = ""
        else:
            results[page_number] = None
    return results


def select_extraction_batch(
    ledger: PageLedger,
    dispatched: DispatchSet,
    current_page: int,
    batch_size: int,
) -> List[int]:
    """Pick the next run of contiguous, pending, undispatched pages.

    Pages from ``current_page`` to the end are scanned first; only when none
    qualify is the range before ``current_page`` back-filled.
    """

    total = ledger.page_count
    if total == 0 or batch_size <= 0:
        return []
    current = min(max(1, current_page), total)

    def _available(number: int) -> bool:
        return ledger.status(number) is PageStatus.PENDING and number not in dispatched

    def _scan(first: int, stop: int) -> List[int]:
        for number in range(first, stop):
            if not _available(number):
                continue
            batch = [number]
            candidate = number + 1
            while len(batch) < batch_size and candidate < stop and _available(candidate):
                batch.append(candidate)
                candidate += 1
            return batch
        return []

    return _scan(current, total + 1) or _scan(1, current)


@dataclass(frozen=True)
class _PreparedPage:
    page_number: int
    material: RawMaterial


class ExtractionWorkerPool:
    """Runs at most ``config.extraction_workers`` extraction batches at once.

    Claims are two-phase: pages enter the dispatch set and become
    ``analyzing`` before the first await, and leave the dispatch set only
    after the batch outcome has been written to the ledger (or rolled back).
    """

    def __init__(
        self,
        *,
        config: SchedulerConfig,
        ledger: PageLedger,
        document: PageSource,
        renderer: RenderSerializer,
        collaborator: ExtractionCollaborator,
        scope: CancellationScope,
        dispatched: Optional[DispatchSet] = None,
        retry_policy: RetryPolicy = EXTRACTION_RETRY_POLICY,
        on_quota: Optional[Callable[[str, QuotaExceededError], None]] = None,
        on_event: Optional[Callable[[str, str], None]] = None,
        on_settled: Optional[Callable[[], None]] = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._document = document
        self._renderer = renderer
        self._collaborator = collaborator
        self._scope = scope
        self.dispatched = dispatched or DispatchSet()
        self._retry_policy = retry_policy
        self._on_quota = on_quota
        self._on_event = on_event
        self._on_settled = on_settled
        self._active = 0
        self.peak_active = 0
        self.batches_started = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def has_capacity(self) -> bool:
        return self._active < self._config.extraction_workers

    def select(self, current_page: int) -> List[int]:
        return select_extraction_batch(self._ledger, self.dispatched, current_page, self._config.extraction_batch_size)

    def dispatch(self, current_page: int) -> Optional[List[int]]:
        """Claim and start one batch if a slot and work are available."""

        if self._scope.cancelled or not self.has_capacity:
            return None
        batch = self.select(current_page)
        if not batch:
            return None
        snapshot = self._ledger.snapshot(batch)
        self.dispatched.claim(batch)
        self._active += 1
        self.peak_active = max(self.peak_active, self._active)
        self.batches_started += 1
        try:
            self._ledger.transition_many(batch, PageStatus.ANALYZING, expected=PageStatus.PENDING)
            self._scope.spawn(self._run_batch(batch, snapshot), name=f"extract-{batch[0]}-{batch[-1]}")
        except OperationCancelled:
            self._ledger.rollback(snapshot)
            self.dispatched.release(batch)
            self._active -= 1
            return None
        self._emit("info", f"Extraction batch {batch} dispatched")
        return batch

    # Batch execution ----------------------------------------------------
    async def _run_batch(self, batch: List[int], snapshot) -> None:
        try:
            prepared, failed = await self._prepare(batch)
            results: Dict[int, Optional[str]] = {}
            error: Optional[BaseException] = None
            if prepared:
                try:
                    results = await self._extract(prepared)
                except OperationCancelled:
                    raise
                except Exception as exc:
                    error = exc
            if self._scope.cancelled:
                raise OperationCancelled("Extraction batch cancelled")
            self._commit(prepared, failed, results, error)
        except (OperationCancelled, asyncio.CancelledError) as exc:
            self._ledger.rollback(snapshot)
            logger.debug("Extraction batch %s discarded after cancellation", batch)
            if isinstance(exc, asyncio.CancelledError):
                raise
        except Exception as exc:
            logger.exception("Extraction batch %s crashed", batch)
            for number in batch:
                self._ledger.transition(number, PageStatus.ERROR, expected=PageStatus.ANALYZING, error=str(exc))
        finally:
            self.dispatched.release(batch)
            self._active -= 1
            if self._on_settled is not None:
                self._on_settled()

    async def _prepare(self, batch: Sequence[int]):
        prepared: List[_PreparedPage] = []
        failed: Dict[int, str] = {}
        for number in batch:
            cached = self._ledger.get(number).raw_material
            if cached is not None:
                prepared.append(_PreparedPage(number, cached))
                continue
            try:
                raw_text = await self._renderer.run(
                    self._document.extract_raw_text,
                    number,
                    timeout=self._config.text_timeout,
                    scope=self._scope,
                    label=f"text extraction for page {number}",
                )
            except RenderError as exc:
                logger.info("Raw text unavailable for page %s: %s", number, exc)
                raw_text = ""
            try:
                image = await self._renderer.run(
                    self._document.render_page,
                    number,
                    timeout=self._config.render_timeout,
                    scope=self._scope,
                    label=f"rendering page {number}",
                )
            except RenderError as exc:
                failed[number] = str(exc)
                self._emit("warning", f"Page {number} could not be rendered: {exc}")
                continue
            prepared.append(_PreparedPage(number, RawMaterial(image=image, raw_text=raw_text)))
        prepared.sort(key=lambda item: item.page_number)
        return prepared, failed

    async def _extract(self, prepared: Sequence[_PreparedPage]) -> Dict[int, Optional[str]]:
        request = [
            ExtractionRequestPage(
                page_number=item.page_number,
                image=item.material.image,
                raw_text=item.material.raw_text,
                image_mime=item.material.image_mime,
            )
            for item in prepared
        ]
        page_numbers = [item.page_number for item in prepared]

        def _quota(exc: QuotaExceededError) -> None:
            if self._on_quota is not None:
                self._on_quota("extraction", exc)

        blob = await call_with_retries(
            lambda: self._collaborator.extract_batch(request, language=self._config.language),
            scope=self._scope,
            policy=self._retry_policy,
            label=f"extraction of pages {page_numbers}",
            on_quota=_quota,
        )
        return demultiplex_sections(blob, page_numbers)

    def _commit(
        self,
        prepared: Sequence[_PreparedPage],
        failed: Dict[int, str],
        results: Dict[int, Optional[str]],
        error: Optional[BaseException],
    ) -> None:
        for number, reason in failed.items():
            self._ledger.transition(number, PageStatus.ERROR, expected=PageStatus.ANALYZING, error=reason)

        if error is not None:
            kind = "quota exhausted" if isinstance(error, QuotaExceededError) else "failed"
            self._emit("error", f"Extraction {kind} for pages {[item.page_number for item in prepared]}: {error}")
            for item in prepared:
                # Keep the rendered material so a retry does not rasterize again.
                self._ledger.transition(
                    item.page_number,
                    PageStatus.ERROR,
                    expected=PageStatus.ANALYZING,
                    raw_material=item.material,
                    error=str(error),
                )
            return

        for item in prepared:
            text = results.get(item.page_number)
            if text is None:
                text = item.material.raw_text.strip()
            if not text or self._config.text_only:
                next_status = PageStatus.READY
            else:
                next_status = PageStatus.EXTRACTED
            self._ledger.transition(
                item.page_number,
                next_status,
                expected=PageStatus.ANALYZING,
                cleaned_text=text,
                raw_material=item.material,
                error=None,
            )
        self._emit("info", f"Extraction committed for pages {[item.page_number for item in prepared]}")

    def _emit(self, level: str, message: str) -> None:
        if self._on_event is not None:
            self._on_event(level, message)
