from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from pagenarrator.cancellation import CancellationScope, OperationCancelled
from pagenarrator.config import SchedulerConfig
from pagenarrator.ledger import PageLedger
from pagenarrator.llm_client import SynthesisCollaborator
from pagenarrator.models import Page, PageAudio, PageStatus
from pagenarrator.rate_limiter import RateLimitedTaskQueue
from pagenarrator.retry import QuotaExceededError, RetryPolicy, SYNTHESIS_RETRY_POLICY, call_with_retries
from pagenarrator.timing import reconstruct_timing
from pagenarrator.wav import WaveformStore, build_wav

logger = logging.getLogger(__name__)


def select_synthesis_batch(ledger: PageLedger, current_page: int, max_chars: int) -> List[int]:
    """Greedy char-bounded run of consecutive ``extracted`` pages.

    The run starts at the first ``extracted`` page at or after
    ``current_page`` (wrapping to the document start). The first page is
    always taken, even when it alone exceeds ``max_chars``.
    """

    total = ledger.page_count
    if total == 0:
        return []
    current = min(max(1, current_page), total)
    extracted = [number for number in ledger.with_status(PageStatus.EXTRACTED)]
    if not extracted:
        return []
    start = next((number for number in extracted if number >= current), extracted[0])

    batch: List[int] = []
    used = 0
    for number in range(start, total + 1):
        page = ledger.get(number)
        if page.status is not PageStatus.EXTRACTED:
            break
        length = len(page.cleaned_text)
        if not batch:
            batch.append(number)
            used = length
            if used >= max_chars:
                break
            continue
        if used + length > max_chars:
            break
        batch.append(number)
        used += length
    return batch


@dataclass
class _PageOutcome:
    page_number: int
    audio: Optional[PageAudio] = None
    error: Optional[str] = None


class SynthesisWorkerPool:
    """Runs at most ``config.synthesis_workers`` synthesis batches at once.

    Each page of a batch becomes one request through the shared
    :class:`RateLimitedTaskQueue`. A failed page falls back to ``ready``
    without audio so its extracted text stays usable.
    """

    def __init__(
        self,
        *,
        config: SchedulerConfig,
        ledger: PageLedger,
        collaborator: SynthesisCollaborator,
        queue: RateLimitedTaskQueue,
        store: WaveformStore,
        scope: CancellationScope,
        retry_policy: RetryPolicy = SYNTHESIS_RETRY_POLICY,
        on_quota: Optional[Callable[[str, QuotaExceededError], None]] = None,
        on_event: Optional[Callable[[str, str], None]] = None,
        on_settled: Optional[Callable[[], None]] = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._collaborator = collaborator
        self._queue = queue
        self._store = store
        self._scope = scope
        self._retry_policy = retry_policy
        self._on_quota = on_quota
        self._on_event = on_event
        self._on_settled = on_settled
        self._active = 0
        self.peak_active = 0
        self.batches_started = 0

    @property
    def enabled(self) -> bool:
        return not self._config.text_only

    @property
    def active(self) -> int:
        return self._active

    @property
    def has_capacity(self) -> bool:
        return self._active < self._config.synthesis_workers

    def select(self, current_page: int) -> List[int]:
        return select_synthesis_batch(self._ledger, current_page, self._config.max_tts_chars)

    def dispatch(self, current_page: int) -> Optional[List[int]]:
        if not self.enabled or self._scope.cancelled or not self.has_capacity:
            return None
        batch = self.select(current_page)
        if not batch:
            return None
        snapshot = self._ledger.snapshot(batch)
        self._active += 1
        self.peak_active = max(self.peak_active, self._active)
        self.batches_started += 1
        try:
            self._ledger.transition_many(batch, PageStatus.SYNTHESIZING, expected=PageStatus.EXTRACTED)
            pages = [self._ledger.get(number) for number in batch]
            self._scope.spawn(self._run_batch(pages, snapshot), name=f"synth-{batch[0]}-{batch[-1]}")
        except OperationCancelled:
            self._ledger.rollback(snapshot)
            self._active -= 1
            return None
        chars = sum(len(self._ledger.get(number).cleaned_text) for number in batch)
        self._emit("info", f"Synthesis batch {batch} dispatched ({chars} chars)")
        return batch

    # Batch execution ----------------------------------------------------
    async def _run_batch(self, pages: Sequence[Page], snapshot) -> None:
        finished: List[_PageOutcome] = []
        try:
            results = await asyncio.gather(
                *(self._synthesize_page(page, finished) for page in pages),
                return_exceptions=True,
            )
            outcomes: List[_PageOutcome] = []
            for page, result in zip(pages, results):
                if isinstance(result, _PageOutcome):
                    outcomes.append(result)
                elif isinstance(result, (OperationCancelled, asyncio.CancelledError)):
                    continue
                else:
                    logger.error("Synthesis of page %s crashed: %s", page.page_number, result)
                    outcomes.append(_PageOutcome(page.page_number, error=str(result)))
            if self._scope.cancelled or len(outcomes) != len(pages):
                raise OperationCancelled("Synthesis batch cancelled")
            self._commit(outcomes)
        except (OperationCancelled, asyncio.CancelledError) as exc:
            # Pages that finished before the cancellation still own a spilled file.
            for outcome in finished:
                if outcome.audio is not None:
                    outcome.audio.waveform.release()
            self._ledger.rollback(snapshot)
            logger.debug("Synthesis batch %s discarded after cancellation", [page.page_number for page in pages])
            if isinstance(exc, asyncio.CancelledError):
                raise
        except Exception as exc:
            logger.exception("Synthesis batch crashed")
            for page in pages:
                self._ledger.transition(page.page_number, PageStatus.READY, expected=PageStatus.SYNTHESIZING, error=str(exc))
            for outcome in finished:
                if outcome.audio is not None and self._ledger.get(outcome.page_number).audio is not outcome.audio:
                    outcome.audio.waveform.release()
        finally:
            self._active -= 1
            if self._on_settled is not None:
                self._on_settled()

    async def _synthesize_page(self, page: Page, finished: List[_PageOutcome]) -> _PageOutcome:
        text = page.cleaned_text
        if not text.strip():
            return _PageOutcome(page.page_number)

        def _quota(exc: QuotaExceededError) -> None:
            if self._on_quota is not None:
                self._on_quota("synthesis", exc)

        async def _request() -> bytes:
            return await call_with_retries(
                lambda: self._collaborator.synthesize(text, voice=self._config.voice),
                scope=self._scope,
                policy=self._retry_policy,
                label=f"synthesis of page {page.page_number}",
                on_quota=_quota,
            )

        try:
            pcm = await self._queue.submit(_request, scope=self._scope)
        except OperationCancelled:
            raise
        except Exception as exc:
            kind = "quota exhausted" if isinstance(exc, QuotaExceededError) else "failed"
            self._emit("warning", f"Synthesis {kind} for page {page.page_number}: {exc}")
            return _PageOutcome(page.page_number, error=str(exc))

        self._scope.raise_if_cancelled()
        waveform = self._store.store(page.page_number, pcm)
        try:
            timing = reconstruct_timing(pcm, text)
        except BaseException:
            waveform.release()
            raise
        outcome = _PageOutcome(
            page.page_number,
            audio=PageAudio(waveform=waveform, segments=timing.segments, sentences=timing.sentences),
        )
        finished.append(outcome)
        return outcome

    def _commit(self, outcomes: Sequence[_PageOutcome]) -> None:
        for outcome in outcomes:
            applied = self._ledger.transition(
                outcome.page_number,
                PageStatus.READY,
                expected=PageStatus.SYNTHESIZING,
                audio=outcome.audio,
                error=outcome.error,
            )
            if not applied and outcome.audio is not None:
                outcome.audio.waveform.release()
        self._emit("info", f"Synthesis committed for pages {[outcome.page_number for outcome in outcomes]}")

    def _emit(self, level: str, message: str) -> None:
        if self._on_event is not None:
            self._on_event(level, message)


VOICE_PREVIEW_TEXT = {
    "en": "This is a preview of my voice for your academic papers.",
    "de": "Dies ist eine Vorschau meiner Stimme für Ihre wissenschaftlichen Artikel.",
}


async def synthesize_voice_preview(
    collaborator: SynthesisCollaborator,
    voice: str,
    *,
    language: str = "en",
    queue: Optional[RateLimitedTaskQueue] = None,
    scope: Optional[CancellationScope] = None,
    retry_policy: RetryPolicy = SYNTHESIS_RETRY_POLICY,
) -> bytes:
    """Speak a fixed sample sentence in ``voice`` and return it as a WAV container.

    The request goes through the same queue and retry discipline as page
    synthesis, so a preview competes fairly with a running session.
    """

    try:
        text = VOICE_PREVIEW_TEXT[language]
    except KeyError:
        raise ValueError(f"Unsupported language: {language}") from None
    scope = scope or CancellationScope("voice-preview")
    queue = queue or RateLimitedTaskQueue()

    async def _request() -> bytes:
        return await call_with_retries(
            lambda: collaborator.synthesize(text, voice=voice),
            scope=scope,
            policy=retry_policy,
            label=f"voice preview ({voice})",
        )

    pcm = await queue.submit(_request, scope=scope)
    return build_wav(pcm)
