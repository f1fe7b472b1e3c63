from __future__ import annotations

import fitz
import pytest

from pagenarrator.document import PdfDocument, read_all_raw_text, slice_document


def _make_pdf(path, texts):
    document = fitz.open()
    for text in texts:
        page = document.new_page(width=300, height=400)
        if text:
            page.insert_text((36, 72), text, fontsize=12)
    document.save(str(path))
    document.close()
    return path


def test_pdf_document_renders_and_extracts_pages(tmp_path):
    source = _make_pdf(tmp_path / "sample.pdf", ["First page text", "", "Third page"])

    with PdfDocument(source, scale=0.5, jpeg_quality=50) as document:
        assert document.page_count == 3
        image = document.render_page(1)
        assert image[:2] == b"\xff\xd8"
        assert document.extract_raw_text(1) == "First page text"
        assert document.extract_raw_text(2) == ""
        with pytest.raises(IndexError):
            document.extract_raw_text(4)

    assert document.closed
    with pytest.raises(ValueError):
        document.render_page(1)


def test_pdf_document_accepts_bytes(tmp_path):
    source = _make_pdf(tmp_path / "sample.pdf", ["Only page"])

    document = PdfDocument(source.read_bytes())
    try:
        assert read_all_raw_text(document) == [(1, "Only page")]
    finally:
        document.close()


def test_missing_document_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        PdfDocument(tmp_path / "missing.pdf")


def test_slice_document_keeps_selected_pages_in_order(tmp_path):
    source = _make_pdf(tmp_path / "sample.pdf", ["one", "two", "three", "four"])

    sliced = slice_document(source, [4, 2], tmp_path / "out" / "sliced.pdf")

    with PdfDocument(sliced) as document:
        assert document.page_count == 2
        assert [text for _, text in read_all_raw_text(document)] == ["two", "four"]


def test_slice_document_validates_selection(tmp_path):
    source = _make_pdf(tmp_path / "sample.pdf", ["one"])

    with pytest.raises(ValueError):
        slice_document(source, [], tmp_path / "empty.pdf")
    with pytest.raises(IndexError):
        slice_document(source, [2], tmp_path / "bad.pdf")
