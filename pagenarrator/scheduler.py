from __future__ import annotations

import asyncio
import logging
import sys
import time
import traceback
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Union

from pagenarrator.cancellation import CancellationScope
from pagenarrator.config import SchedulerConfig
from pagenarrator.document import PageSource
from pagenarrator.extraction import ExtractionWorkerPool
from pagenarrator.ledger import DispatchSet, PageLedger
from pagenarrator.llm_client import ExtractionCollaborator, SynthesisCollaborator
from pagenarrator.models import Page, PageStatus, ProcessingState
from pagenarrator.rate_limiter import RateLimitedTaskQueue
from pagenarrator.render import RenderSerializer
from pagenarrator.retry import EXTRACTION_RETRY_POLICY, SYNTHESIS_RETRY_POLICY, QuotaExceededError, RetryPolicy
from pagenarrator.synthesis import SynthesisWorkerPool
from pagenarrator.utils import get_user_cache_path
from pagenarrator.wav import WaveformStore


_SESSION_LOGGER = logging.getLogger("pagenarrator.sessions")
if not _SESSION_LOGGER.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"))
    _SESSION_LOGGER.addHandler(handler)
    _SESSION_LOGGER.propagate = False
_SESSION_LOGGER.setLevel(logging.INFO)

_SESSION_LEVEL_MAP: Dict[str, int] = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "success": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


def _emit_session_log(session_id: str, level: str, message: str) -> None:
    normalized = (level or "info").lower()
    log_level = _SESSION_LEVEL_MAP.get(normalized, logging.INFO)
    try:
        _SESSION_LOGGER.log(log_level, "[session %s] %s", session_id, message)
    except Exception:
        # Logging failures should never disrupt scheduling, but we should know about them.
        try:
            sys.stderr.write(f"Logging failed for session {session_id}: {message}\n")
            traceback.print_exc(file=sys.stderr)
        except Exception:
            pass


@dataclass(frozen=True)
class QuotaAdvisory:
    stage: str
    message: str
    raised_at: float


class NarrationSession:
    """Scheduler for one loaded document.

    Owns the page ledger, the document's cancellation scope and both worker
    pools. All decisions happen on the event loop: :meth:`tick` fills every
    free slot, and every ledger change or batch completion schedules one
    coalesced tick.
    """

    def __init__(
        self,
        document: PageSource,
        *,
        extractor: ExtractionCollaborator,
        synthesizer: Optional[SynthesisCollaborator] = None,
        config: Optional[SchedulerConfig] = None,
        waveform_dir: Optional[Union[str, Path]] = None,
        start_page: int = 1,
        session_id: Optional[str] = None,
        extraction_retry: RetryPolicy = EXTRACTION_RETRY_POLICY,
        synthesis_retry: RetryPolicy = SYNTHESIS_RETRY_POLICY,
        on_change: Optional[Callable[[FrozenSet[int]], None]] = None,
    ) -> None:
        self.config = config or SchedulerConfig()
        if not self.config.text_only and synthesizer is None:
            raise ValueError("A synthesis collaborator is required unless text_only is set")
        self.id = session_id or uuid.uuid4().hex[:12]
        self.document = document
        self.ledger = PageLedger(document.page_count)
        self.scope = CancellationScope(name=self.id)
        self.dispatched = DispatchSet()
        self.renderer = RenderSerializer()
        self.tts_queue = RateLimitedTaskQueue(
            max_concurrent=self.config.tts_max_concurrent,
            min_interval=self.config.tts_min_interval,
        )
        directory = Path(waveform_dir) if waveform_dir else Path(get_user_cache_path("sessions")) / self.id
        self.store = WaveformStore(directory)
        self._current_page = self._clamp(start_page)
        self._advisory: Optional[QuotaAdvisory] = None
        self._tick_handle: Optional[asyncio.Handle] = None
        self._idle_event: Optional[asyncio.Event] = None
        self._started = False
        self._closed = False
        self._on_change = on_change

        self.extraction = ExtractionWorkerPool(
            config=self.config,
            ledger=self.ledger,
            document=document,
            renderer=self.renderer,
            collaborator=extractor,
            scope=self.scope,
            dispatched=self.dispatched,
            retry_policy=extraction_retry,
            on_quota=self._record_quota,
            on_event=self.log,
            on_settled=self._request_tick,
        )
        self.synthesis: Optional[SynthesisWorkerPool] = None
        if synthesizer is not None:
            self.synthesis = SynthesisWorkerPool(
                config=self.config,
                ledger=self.ledger,
                collaborator=synthesizer,
                queue=self.tts_queue,
                store=self.store,
                scope=self.scope,
                retry_policy=synthesis_retry,
                on_quota=self._record_quota,
                on_event=self.log,
                on_settled=self._request_tick,
            )
        self._unsubscribe = self.ledger.subscribe(self._on_ledger_change)

    # Public API ---------------------------------------------------------
    @property
    def current_page(self) -> int:
        return self._current_page

    @property
    def advisory(self) -> Optional[QuotaAdvisory]:
        return self._advisory

    @property
    def closed(self) -> bool:
        return self._closed

    def log(self, level: str, message: str) -> None:
        _emit_session_log(self.id, level, message)

    def start(self) -> None:
        """Begin scheduling. Must be called from within the running event loop."""

        asyncio.get_running_loop()
        if self._started:
            return
        self._started = True
        self.log("info", f"Session started for {self.ledger.page_count} pages (text_only={self.config.text_only})")
        self.tick()

    def set_current_page(self, page_number: int) -> None:
        clamped = self._clamp(page_number)
        if clamped == self._current_page:
            return
        self._current_page = clamped
        self._request_tick()

    def retry_page(self, page_number: int) -> bool:
        """Return an ``error`` page to ``pending`` so it is selected again."""

        if self.scope.cancelled:
            return False
        return self.ledger.transition(page_number, PageStatus.PENDING, expected=PageStatus.ERROR, error=None)

    def clear_advisory(self) -> None:
        self._advisory = None

    def tick(self) -> None:
        self._tick_handle = None
        if not self._started or self.scope.cancelled:
            self._update_idle()
            return
        while self.extraction.has_capacity:
            if self.extraction.dispatch(self._current_page) is None:
                break
        if self.synthesis is not None and self.synthesis.enabled:
            while self.synthesis.has_capacity:
                if self.synthesis.dispatch(self._current_page) is None:
                    break
        self._update_idle()

    def is_idle(self) -> bool:
        if self.extraction.active or (self.synthesis is not None and self.synthesis.active):
            return False
        if self.scope.cancelled:
            return True
        if self.extraction.select(self._current_page):
            return False
        if self.synthesis is not None and self.synthesis.enabled and self.synthesis.select(self._current_page):
            return False
        return True

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        if not self._started:
            self.start()
        event = self._get_idle_event()
        self._update_idle()
        await asyncio.wait_for(event.wait(), timeout=timeout)

    def progress(self) -> ProcessingState:
        counts = self.ledger.counts()
        processed = counts[PageStatus.READY.value] + counts[PageStatus.ERROR.value]
        synthesis_active = self.synthesis.active if self.synthesis is not None else 0
        return ProcessingState(
            total_pages=self.ledger.page_count,
            processed_pages=processed,
            is_processing=not self.is_idle(),
            active_extraction_batches=self.extraction.active,
            active_synthesis_batches=synthesis_active,
            counts_by_status=counts,
        )

    def pages(self) -> List[Page]:
        return self.ledger.pages()

    def abort(self) -> bool:
        """Invalidate every outstanding operation for this document."""

        if not self.scope.cancel():
            return False
        if self._tick_handle is not None:
            self._tick_handle.cancel()
            self._tick_handle = None
        self.log("debug", "Session aborted")
        return True

    async def unload(self) -> None:
        """Abort, wait for in-flight batches to unwind, then release every resource."""

        if self._closed:
            return
        self.abort()
        await self.scope.drain()
        await self.renderer.drain()
        released = self.ledger.detach_audio()
        self.store.clear()
        self._unsubscribe()
        self.document.close()
        self._closed = True
        self._update_idle()
        self.log("info", f"Session unloaded; released {released} waveform(s)")

    # Internal helpers -------------------------------------------------
    def _clamp(self, page_number: int) -> int:
        total = self.ledger.page_count
        if total == 0:
            return 1
        return min(max(1, int(page_number)), total)

    def _record_quota(self, stage: str, exc: QuotaExceededError) -> None:
        if self._advisory is None:
            self._advisory = QuotaAdvisory(
                stage=stage,
                message=f"The {stage} service is rate limited; work continues with longer pauses ({exc}).",
                raised_at=time.time(),
            )
            self.log("warning", self._advisory.message)

    def _on_ledger_change(self, changed: FrozenSet[int]) -> None:
        if self._on_change is not None:
            try:
                self._on_change(changed)
            except Exception:
                logging.getLogger(__name__).exception("Change callback failed")
        self._request_tick()

    def _request_tick(self) -> None:
        if self._tick_handle is not None or not self._started or self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._tick_handle = loop.call_soon(self.tick)

    def _get_idle_event(self) -> asyncio.Event:
        if self._idle_event is None:
            self._idle_event = asyncio.Event()
        return self._idle_event

    def _update_idle(self) -> None:
        if self._idle_event is None:
            return
        if self._closed or self.is_idle():
            self._idle_event.set()
        else:
            self._idle_event.clear()
