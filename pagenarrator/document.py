from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Union

import fitz

from pagenarrator.utils import clean_text

logger = logging.getLogger(__name__)


class PageSource(Protocol):
    """The only document operations the scheduler relies on.

    Implementations are blocking and not safe for concurrent use; callers go
    through :class:`pagenarrator.render.RenderSerializer`.
    """

    @property
    def page_count(self) -> int: ...

    def render_page(self, page_number: int) -> bytes: ...

    def extract_raw_text(self, page_number: int) -> str: ...

    def close(self) -> None: ...


class PdfDocument:
    """PyMuPDF-backed :class:`PageSource`. Page numbers are 1-based."""

    def __init__(
        self,
        source: Union[str, Path, bytes],
        *,
        scale: float = 1.2,
        jpeg_quality: int = 70,
    ) -> None:
        if isinstance(source, (bytes, bytearray)):
            self._document = fitz.open(stream=bytes(source), filetype="pdf")
            self.name = "document.pdf"
        else:
            path = Path(source)
            if not path.exists():
                raise FileNotFoundError(f"Document not found: {path}")
            self._document = fitz.open(str(path))
            self.name = path.name
        self.scale = scale
        self.jpeg_quality = jpeg_quality
        self._closed = False

    @property
    def page_count(self) -> int:
        return self._document.page_count

    @property
    def closed(self) -> bool:
        return self._closed

    def get_page(self, page_number: int) -> "fitz.Page":
        if self._closed:
            raise ValueError("Document is closed")
        if not 1 <= page_number <= self.page_count:
            raise IndexError(f"Page {page_number} is outside 1..{self.page_count}")
        return self._document.load_page(page_number - 1)

    def render_page(self, page_number: int) -> bytes:
        page = self.get_page(page_number)
        pixmap = page.get_pixmap(matrix=fitz.Matrix(self.scale, self.scale), alpha=False)
        return pixmap.tobytes(output="jpeg", jpg_quality=self.jpeg_quality)

    def extract_raw_text(self, page_number: int) -> str:
        page = self.get_page(page_number)
        # Columns are flattened; the extraction model rebuilds the reading order.
        return clean_text(page.get_text("text"), replace_single_newlines=True)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._document.close()

    def __enter__(self) -> "PdfDocument":
        return self

    def __exit__(self, *_exc) -> None:
        self.close()


def read_all_raw_text(document: PageSource) -> List[tuple[int, str]]:
    pages: List[tuple[int, str]] = []
    for page_number in range(1, document.page_count + 1):
        try:
            pages.append((page_number, document.extract_raw_text(page_number)))
        except Exception as exc:
            logger.warning("Failed to pre-extract page %s: %s", page_number, exc)
    return pages


def slice_document(source: Union[str, Path], page_numbers: Iterable[int], destination: Union[str, Path]) -> Path:
    """Write a new PDF holding only ``page_numbers`` (1-based), renumbered from 1."""

    selected = sorted({int(number) for number in page_numbers})
    if not selected:
        raise ValueError("At least one page must be selected")
    destination_path = Path(destination)
    destination_path.parent.mkdir(parents=True, exist_ok=True)
    with fitz.open(str(source)) as document:
        invalid: Optional[int] = next((n for n in selected if not 1 <= n <= document.page_count), None)
        if invalid is not None:
            raise IndexError(f"Page {invalid} is outside 1..{document.page_count}")
        document.select([number - 1 for number in selected])
        document.save(str(destination_path), garbage=3, deflate=True)
    return destination_path
