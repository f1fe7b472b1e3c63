from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import FrozenSet, List, Optional

from pagenarrator.config import SUPPORTED_LANGUAGES, VOICE_PROFILES, load_scheduler_config, load_service_settings
from pagenarrator.document import PdfDocument, read_all_raw_text, slice_document
from pagenarrator.epub3 import build_text_epub
from pagenarrator.export import build_transcript, export_narration, export_timings
from pagenarrator.llm_client import OpenAICompatibleClient
from pagenarrator.models import PageStatus
from pagenarrator.prescreen import PrescreenResult, analyze_document_structure
from pagenarrator.rate_limiter import RateLimitedTaskQueue
from pagenarrator.retry import CollaboratorError
from pagenarrator.scheduler import NarrationSession
from pagenarrator.synthesis import synthesize_voice_preview

logger = logging.getLogger(__name__)


def _voice_help() -> str:
    names = ", ".join(name for name, _ in VOICE_PROFILES)
    return f"Synthesis voice name (e.g. {names})"


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pagenarrator", description="Turn a PDF into narrated audio, page by page.")
    verbosity = p.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors")
    sub = p.add_subparsers(dest="command", required=True)

    narrate = sub.add_parser("narrate", help="Extract and narrate a document")
    narrate.add_argument("input", help="Path to the PDF to narrate")
    narrate.add_argument("--output-dir", default=None, help="Directory for transcript and audio (default: next to input)")
    narrate.add_argument(
        "--mode",
        choices=["audio", "text"],
        default=None,
        help="text skips synthesis (default: PAGENARRATOR_TEXT_ONLY or config.json, else audio)",
    )
    narrate.add_argument("--voice", default=None, help=_voice_help())
    narrate.add_argument("--language", choices=list(SUPPORTED_LANGUAGES), default=None)
    narrate.add_argument("--start-page", type=int, default=1, help="Page the reader starts on")
    narrate.add_argument("--prescreen", action="store_true", help="Skip front and back matter before narrating")
    narrate.add_argument("--epub", action="store_true", help="Also write a text-only EPUB")
    narrate.add_argument("--timings", action="store_true", help="Also write per-word timings as JSON")
    narrate.add_argument("--format", choices=["wav", "flac", "ogg"], default="wav", help="Narration file format")

    prescreen = sub.add_parser("prescreen", help="Classify the pages of a document")
    prescreen.add_argument("input", help="Path to the PDF to classify")

    preview = sub.add_parser("preview-voice", help="Synthesize a short sample of a voice")
    preview.add_argument("output", help="Where to write the WAV sample")
    preview.add_argument("--voice", default=None, help=_voice_help())
    preview.add_argument("--language", choices=list(SUPPORTED_LANGUAGES), default=None)

    sub.add_parser("voices", help="List the suggested synthesis voices")

    return p


def _configure_logging(args: argparse.Namespace) -> None:
    if args.verbose:
        level = logging.DEBUG
    elif args.quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")
    logging.getLogger("pagenarrator.sessions").setLevel(level)
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def _print_classification(result: PrescreenResult) -> None:
    for page in result.pages:
        marker = "x" if page.selected else " "
        reason = f"  {page.reasoning}" if page.reasoning else ""
        print(f"[{marker}] page {page.page_number:>4}  {page.category:<10}{reason}")
    print(f"{result.total_selected} of {len(result.pages)} page(s) selected")


async def _prescreen(path: Path, client: OpenAICompatibleClient) -> PrescreenResult:
    with PdfDocument(path) as document:
        pages = read_all_raw_text(document)
    return await analyze_document_structure(pages, client)


async def _narrate(args: argparse.Namespace) -> int:
    source = Path(args.input)
    output_dir = Path(args.output_dir) if args.output_dir else source.parent
    output_dir.mkdir(parents=True, exist_ok=True)
    config = load_scheduler_config(
        {
            "text_only": None if args.mode is None else args.mode == "text",
            "voice": args.voice,
            "language": args.language,
        }
    )
    settings = load_service_settings()
    if not settings.is_configured():
        logger.error("The extraction service is not configured; set PAGENARRATOR_BASE_URL and PAGENARRATOR_EXTRACTION_MODEL")
        return 2

    async with OpenAICompatibleClient(settings) as client:
        if args.prescreen:
            result = await _prescreen(source, client)
            _print_classification(result)
            if not result.selected_pages:
                logger.error("Pre-screen selected no pages")
                return 1
            source = slice_document(source, result.selected_pages, output_dir / f"{source.stem}.selected.pdf")

        document = PdfDocument(source, scale=config.render_scale, jpeg_quality=config.jpeg_quality)
        session: Optional[NarrationSession] = None

        def _report(_changed: FrozenSet[int]) -> None:
            if session is None or args.quiet:
                return
            state = session.progress()
            print(f"\r{state.processed_pages}/{state.total_pages} page(s) processed", end="", flush=True)

        try:
            session = NarrationSession(
                document,
                extractor=client,
                synthesizer=None if config.text_only else client,
                config=config,
                start_page=args.start_page,
                on_change=_report,
            )
            session.start()
            await session.wait_until_idle()
            if not args.quiet:
                print()
            pages = session.pages()

            transcript_path = output_dir / f"{source.stem}.txt"
            transcript_path.write_text(build_transcript(pages), encoding="utf-8")
            logger.info("Transcript written to %s", transcript_path)

            if not config.text_only:
                try:
                    export_narration(pages, output_dir / f"{source.stem}.{args.format}")
                except ValueError as exc:
                    logger.warning("No narration written: %s", exc)

            if args.timings:
                timings_path = export_timings(pages, output_dir / f"{source.stem}.timings.json")
                logger.info("Timings written to %s", timings_path)

            if args.epub:
                epub_path = build_text_epub(output_dir / f"{source.stem}.epub", source.stem, pages, config.language)
                logger.info("EPUB written to %s", epub_path)

            failed: List[int] = [page.page_number for page in pages if page.status is PageStatus.ERROR]
        finally:
            if session is not None:
                await session.unload()
            else:
                document.close()

    if failed:
        logger.error("%s page(s) failed: %s", len(failed), ", ".join(str(number) for number in failed))
        return 1
    return 0


async def _run_prescreen(args: argparse.Namespace) -> int:
    settings = load_service_settings()
    if not settings.is_configured():
        logger.error("The extraction service is not configured")
        return 2
    async with OpenAICompatibleClient(settings) as client:
        result = await _prescreen(Path(args.input), client)
    _print_classification(result)
    return 0


async def _preview_voice(args: argparse.Namespace) -> int:
    config = load_scheduler_config({"voice": args.voice, "language": args.language})
    settings = load_service_settings()
    if not settings.base_url.strip():
        logger.error("The speech service is not configured; set PAGENARRATOR_BASE_URL")
        return 2
    queue = RateLimitedTaskQueue(max_concurrent=config.tts_max_concurrent, min_interval=config.tts_min_interval)
    try:
        async with OpenAICompatibleClient(settings) as client:
            container = await synthesize_voice_preview(client, config.voice, language=config.language, queue=queue)
    except CollaboratorError as exc:
        logger.error("Voice preview failed: %s", exc)
        return 1
    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(container)
    logger.info("Preview of voice %s written to %s", config.voice, output)
    return 0


def _list_voices() -> int:
    for name, description in VOICE_PROFILES:
        print(f"{name:<10} {description}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args)
    if args.command == "voices":
        return _list_voices()
    if args.command in {"narrate", "prescreen"} and not Path(args.input).is_file():
        logger.error("Input file not found: %s", args.input)
        return 2
    try:
        if args.command == "narrate":
            return asyncio.run(_narrate(args))
        if args.command == "prescreen":
            return asyncio.run(_run_prescreen(args))
        if args.command == "preview-voice":
            return asyncio.run(_preview_voice(args))
    except KeyboardInterrupt:
        return 130
    return 2


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    sys.exit(main())
