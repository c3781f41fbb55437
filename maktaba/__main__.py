"""Command-line entry point for the maktaba library assistant."""

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv

from maktaba.config import Settings
from maktaba.exceptions import MaktabaError
from maktaba.rag.corrector import TextCorrector
from maktaba.rag.document_store import DocumentRegistry
from maktaba.rag.invocation import get_invoker
from maktaba.rag.pipeline import IngestionPipeline, QueryPipeline
from maktaba.rag.vectorstore import create_vector_store

logger = logging.getLogger("maktaba")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="maktaba",
        description="Ingest PDF books and ask questions about them.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Extract, chunk and embed a PDF.")
    ingest.add_argument("pdf", help="Local path or s3://bucket/key of the PDF.")
    ingest.add_argument("--document-id", help="Registry id (default: random).")
    ingest.add_argument("--name", help="Display name (default: file name).")

    sweep = sub.add_parser("sweep", help="Correct OCR damage in stored chunks.")
    sweep.add_argument(
        "--document-id",
        action="append",
        dest="document_ids",
        help="Restrict the sweep to a document (repeatable).",
    )
    sweep.add_argument(
        "--aggressive",
        action="store_true",
        help="Treat every chunk as a candidate, not only flagged ones.",
    )

    ask = sub.add_parser("ask", help="Answer a question over ingested documents.")
    ask.add_argument("question")
    ask.add_argument(
        "--document-id",
        action="append",
        dest="document_ids",
        help="Search only this document (repeatable; default: selected documents).",
    )
    ask.add_argument(
        "--multi-hop",
        action="store_true",
        help="Allow multi-hop reasoning for complex questions.",
    )
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, settings: Settings) -> int:
    invoker = get_invoker(settings)
    store = create_vector_store(settings)
    registry = DocumentRegistry(settings.registry_path)

    if args.command == "ingest":
        pipeline = IngestionPipeline(settings, invoker, store, registry)
        document_id = args.document_id or uuid.uuid4().hex[:12]

        def progress(done: int, total: int) -> None:
            print(f"\r{done}/{total} pages", end="", file=sys.stderr, flush=True)

        stored = await pipeline.embed_document_in_batches(
            document_id,
            args.pdf,
            on_progress=progress,
            display_name=args.name or Path(args.pdf).name,
        )
        print(file=sys.stderr)
        print(f"{document_id}: {stored} chunks stored")
        return 0

    if args.command == "sweep":
        corrector = TextCorrector(settings, invoker, store)
        report = await corrector.sweep(args.document_ids, aggressive=args.aggressive)
        print(report.model_dump_json(indent=2))
        return 0

    pipeline = QueryPipeline(settings, invoker, store, registry)
    result = await pipeline.answer(
        args.question, args.document_ids, use_multi_hop=args.multi_hop
    )
    print(result.answer)
    if result.sources:
        print("\nSources:")
        for source in result.sources:
            print(f"- {source}")
    print(f"\n[{result.strategy} | confidence {result.confidence:.2f}]")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    settings = Settings.from_env()
    settings.setup_logging()
    try:
        return asyncio.run(run(args, settings))
    except MaktabaError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
