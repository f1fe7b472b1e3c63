from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set

from pagenarrator.models import Page, PageStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Mapping[PageStatus, FrozenSet[PageStatus]] = {
    PageStatus.PENDING: frozenset({PageStatus.ANALYZING}),
    PageStatus.ANALYZING: frozenset({PageStatus.EXTRACTED, PageStatus.READY, PageStatus.ERROR}),
    PageStatus.EXTRACTED: frozenset({PageStatus.SYNTHESIZING}),
    PageStatus.SYNTHESIZING: frozenset({PageStatus.READY}),
    PageStatus.READY: frozenset(),
    PageStatus.ERROR: frozenset({PageStatus.PENDING}),
}

LedgerListener = Callable[[FrozenSet[int]], None]


class InvalidTransition(ValueError):
    """Raised when a page status change is not part of the state machine."""


class PageLedger:
    """Single owner of every :class:`Page` record of one document.

    Records are immutable and replaced on every write, so a snapshot is a
    plain mapping of the current records and rolling back is a re-insert.
    """

    def __init__(self, page_count: int) -> None:
        if page_count < 0:
            raise ValueError("page_count cannot be negative")
        self._pages: Dict[int, Page] = {number: Page(page_number=number) for number in range(1, page_count + 1)}
        self._listeners: List[LedgerListener] = []
        self._version = 0

    # Queries ------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._pages)

    def __iter__(self) -> Iterator[Page]:
        return iter(self.pages())

    def __contains__(self, page_number: object) -> bool:
        return page_number in self._pages

    @property
    def page_count(self) -> int:
        return len(self._pages)

    @property
    def version(self) -> int:
        return self._version

    def get(self, page_number: int) -> Page:
        try:
            return self._pages[page_number]
        except KeyError:
            raise KeyError(f"Unknown page {page_number}") from None

    def status(self, page_number: int) -> PageStatus:
        return self.get(page_number).status

    def pages(self) -> List[Page]:
        return [self._pages[number] for number in sorted(self._pages)]

    def with_status(self, *statuses: PageStatus) -> List[int]:
        wanted = set(statuses)
        return [number for number in sorted(self._pages) if self._pages[number].status in wanted]

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in PageStatus}
        for page in self._pages.values():
            counts[page.status.value] += 1
        return counts

    # Writes -------------------------------------------------------------
    def transition(
        self,
        page_number: int,
        new_status: PageStatus,
        *,
        expected: Optional[PageStatus] = None,
        **updates: object,
    ) -> bool:
        """Move ``page_number`` to ``new_status``, applying ``updates`` with it.

        When ``expected`` is given and the page is no longer in that status the
        write is dropped and ``False`` is returned.
        """

        current = self.get(page_number)
        if expected is not None and current.status is not expected:
            logger.debug(
                "Dropping write for page %s: expected %s, found %s",
                page_number,
                expected.value,
                current.status.value,
            )
            return False
        if new_status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransition(
                f"Page {page_number} cannot move from {current.status.value} to {new_status.value}"
            )
        self._pages[page_number] = replace(current, status=new_status, **updates)
        self._notify({page_number})
        return True

    def transition_many(self, page_numbers: Iterable[int], new_status: PageStatus, *, expected: Optional[PageStatus] = None) -> List[int]:
        numbers = list(page_numbers)
        for number in numbers:
            current = self.get(number)
            if expected is not None and current.status is not expected:
                continue
            if new_status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransition(
                    f"Page {number} cannot move from {current.status.value} to {new_status.value}"
                )
        changed: List[int] = []
        for number in numbers:
            current = self._pages[number]
            if expected is not None and current.status is not expected:
                continue
            self._pages[number] = replace(current, status=new_status)
            changed.append(number)
        if changed:
            self._notify(set(changed))
        return changed

    def snapshot(self, page_numbers: Iterable[int]) -> Dict[int, Page]:
        return {number: self.get(number) for number in page_numbers}

    def rollback(self, snapshot: Mapping[int, Page]) -> None:
        """Restore records captured by :meth:`snapshot`, bypassing the state machine."""

        if not snapshot:
            return
        for number, page in snapshot.items():
            if number not in self._pages:
                raise KeyError(f"Unknown page {number}")
            self._pages[number] = page
        self._notify(set(snapshot))

    def detach_audio(self) -> int:
        """Release every held waveform and drop the references. Returns the count released."""

        released = 0
        for number, page in list(self._pages.items()):
            if page.audio is None:
                continue
            if not page.audio.waveform.released:
                page.audio.waveform.release()
                released += 1
            self._pages[number] = replace(page, audio=None)
        return released

    # Listeners ----------------------------------------------------------
    def subscribe(self, listener: LedgerListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _notify(self, page_numbers: Set[int]) -> None:
        self._version += 1
        changed = frozenset(page_numbers)
        for listener in list(self._listeners):
            try:
                listener(changed)
            except Exception:
                logger.exception("Ledger listener failed")


class DispatchSet:
    """Pages claimed by in-flight extraction batches."""

    def __init__(self) -> None:
        self._claimed: Set[int] = set()

    def __contains__(self, page_number: object) -> bool:
        return page_number in self._claimed

    def __len__(self) -> int:
        return len(self._claimed)

    def claim(self, page_numbers: Iterable[int]) -> None:
        numbers = set(page_numbers)
        overlap = numbers & self._claimed
        if overlap:
            raise RuntimeError(f"Pages already dispatched: {sorted(overlap)}")
        self._claimed |= numbers

    def release(self, page_numbers: Iterable[int]) -> None:
        self._claimed.difference_update(page_numbers)
