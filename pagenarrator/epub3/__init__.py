from pagenarrator.epub3.exporter import TextEpubBuilder, build_text_epub

__all__ = ["TextEpubBuilder", "build_text_epub"]
