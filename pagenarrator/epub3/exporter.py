from __future__ import annotations

import html
import uuid
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Iterable, Optional, Union

import markdown

from pagenarrator.export import stitch_text
from pagenarrator.models import Page


class TextEpubBuilder:
    """Constructs a single-document EPUB 3 package from stitched page text."""

    def __init__(
        self,
        *,
        output_path: Path,
        title: str,
        body_markdown: str,
        language: str = "en",
        book_id: Optional[str] = None,
    ) -> None:
        self.output_path = output_path
        self.title = title.strip() or "Untitled"
        self.body_markdown = body_markdown
        self.language = language or "en"
        self.book_id = book_id or str(uuid.uuid4())
        self._modified = _utc_now_iso()

    def build(self) -> Path:
        with TemporaryDirectory() as tmp_dir:
            root = Path(tmp_dir)
            oebps = root / "OEBPS"
            oebps.mkdir(parents=True, exist_ok=True)

            _write_mimetype(root)
            _write_container_xml(root)

            (oebps / "content.xhtml").write_text(self._render_content_xhtml(), encoding="utf-8")
            (oebps / "nav.xhtml").write_text(self._render_nav(), encoding="utf-8")
            (oebps / "content.opf").write_text(self._render_opf(), encoding="utf-8")

            self.output_path.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(self.output_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                # mimetype must be the first entry and stored without compression
                mimetype_path = root / "mimetype"
                info = zipfile.ZipInfo("mimetype")
                info.compress_type = zipfile.ZIP_STORED
                archive.writestr(info, mimetype_path.read_bytes())

                for file_path in sorted(root.rglob("*")):
                    if file_path == mimetype_path or file_path.is_dir():
                        continue
                    archive.write(file_path, file_path.relative_to(root))

        return self.output_path

    # ------------------------------------------------------------------
    def _render_body(self) -> str:
        return markdown.markdown(self.body_markdown, extensions=["fenced_code"], output_format="xhtml")

    def _render_content_xhtml(self) -> str:
        return (
            "<?xml version=\"1.0\" encoding=\"utf-8\"?>\n"
            "<!DOCTYPE html>\n"
            "<html xmlns=\"http://www.w3.org/1999/xhtml\" xmlns:epub=\"http://www.idpf.org/2007/ops\" xml:lang=\"{lang}\">\n"
            "  <head>\n"
            "    <title>{title}</title>\n"
            "    <meta charset=\"utf-8\"/>\n"
            "    <style>{style}</style>\n"
            "  </head>\n"
            "  <body>\n"
            "    <h1>{title}</h1>\n"
            "{body}\n"
            "  </body>\n"
            "</html>\n"
        ).format(
            lang=html.escape(self.language),
            title=html.escape(self.title),
            style=_DEFAULT_STYLESHEET,
            body=self._render_body(),
        )

    def _render_nav(self) -> str:
        return (
            "<?xml version=\"1.0\" encoding=\"utf-8\"?>\n"
            "<html xmlns=\"http://www.w3.org/1999/xhtml\" xmlns:epub=\"http://www.idpf.org/2007/ops\" xml:lang=\"{lang}\">\n"
            "  <head>\n"
            "    <title>Navigation</title>\n"
            "    <meta charset=\"utf-8\"/>\n"
            "  </head>\n"
            "  <body>\n"
            "    <nav epub:type=\"toc\" id=\"toc\">\n"
            "      <h1>{title}</h1>\n"
            "      <ol>\n"
            "        <li><a href=\"content.xhtml\">{title}</a></li>\n"
            "      </ol>\n"
            "    </nav>\n"
            "  </body>\n"
            "</html>\n"
        ).format(lang=html.escape(self.language), title=html.escape(self.title))

    def _render_opf(self) -> str:
        return (
            "<?xml version=\"1.0\" encoding=\"utf-8\"?>\n"
            "<package xmlns=\"http://www.idpf.org/2007/opf\" version=\"3.0\" unique-identifier=\"book-id\">\n"
            "  <metadata xmlns:dc=\"http://purl.org/dc/elements/1.1/\">\n"
            "    <dc:identifier id=\"book-id\">urn:uuid:{book_id}</dc:identifier>\n"
            "    <dc:title>{title}</dc:title>\n"
            "    <dc:language>{lang}</dc:language>\n"
            "    <meta property=\"dcterms:modified\">{modified}</meta>\n"
            "  </metadata>\n"
            "  <manifest>\n"
            "    <item id=\"content\" href=\"content.xhtml\" media-type=\"application/xhtml+xml\"/>\n"
            "    <item id=\"nav\" href=\"nav.xhtml\" media-type=\"application/xhtml+xml\" properties=\"nav\"/>\n"
            "  </manifest>\n"
            "  <spine>\n"
            "    <itemref idref=\"content\"/>\n"
            "  </spine>\n"
            "</package>\n"
        ).format(
            book_id=html.escape(self.book_id),
            title=html.escape(self.title),
            lang=html.escape(self.language),
            modified=self._modified,
        )


def build_text_epub(
    output_path: Union[str, Path],
    title: str,
    pages: Iterable[Page],
    language: str = "en",
) -> Path:
    builder = TextEpubBuilder(
        output_path=Path(output_path),
        title=title,
        body_markdown=stitch_text(pages),
        language=language,
    )
    return builder.build()


def _write_mimetype(root: Path) -> None:
    (root / "mimetype").write_text("application/epub+zip", encoding="utf-8")


def _write_container_xml(root: Path) -> None:
    meta_inf = root / "META-INF"
    meta_inf.mkdir(parents=True, exist_ok=True)
    container = meta_inf / "container.xml"
    container.write_text(
        (
            "<?xml version=\"1.0\" encoding=\"UTF-8\"?>\n"
            "<container version=\"1.0\" xmlns=\"urn:oasis:names:tc:opendocument:xmlns:container\">\n"
            "  <rootfiles>\n"
            "    <rootfile full-path=\"OEBPS/content.opf\" media-type=\"application/oebps-package+xml\"/>\n"
            "  </rootfiles>\n"
            "</container>\n"
        ),
        encoding="utf-8",
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


_DEFAULT_STYLESHEET = (
    "body { font-family: Georgia, serif; line-height: 1.5; margin: 2em; } "
    "h1 { text-align: center; margin-bottom: 1em; } "
    "p { margin-bottom: 1em; text-align: justify; }"
)
