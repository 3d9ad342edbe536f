"""Command-line entrypoint: ingest files, search the index, inspect jobs.

Usage:
    docindex ingest docs/guide.md src/app.py
    docindex search "how do I rotate keys" -k 5 --alpha 0.5
    docindex job <document_id>

Uses the SQL store from settings.DATABASE_URL, so documents and the index
survive between invocations.
"""
import argparse
import asyncio
import logging
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from docindex.errors import DocIndexError
from docindex.obs import configure_logging
from docindex.schemas import SearchFilters
from docindex.services import Services, build_services

logger = logging.getLogger(__name__)

EXTENSION_TYPES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".txt": "text/plain",
    ".html": "text/html",
    ".htm": "text/html",
    ".py": "text/x-python",
    ".js": "text/javascript",
    ".mjs": "text/javascript",
    ".ts": "text/x-typescript",
    ".java": "text/x-java",
    ".go": "text/x-go",
    ".rs": "text/x-rust",
    ".c": "text/x-c",
    ".h": "text/x-c",
    ".cpp": "text/x-c++",
    ".cs": "text/x-csharp",
    ".rb": "text/x-ruby",
}


def guess_content_type(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in EXTENSION_TYPES:
        return EXTENSION_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "text/plain"


async def ingest(services: Services, paths: List[Path], content_type: Optional[str] = None) -> int:
    """Process files concurrently; returns the number of failed documents."""
    items = []
    for path in paths:
        data = path.read_bytes()
        document = services.processor.register(path.name, data, content_type or guess_content_type(path))
        items.append((document, data))
    jobs = await services.processor.process_many(items)
    failed = 0
    for (document, _), job in zip(items, jobs):
        if job.error:
            failed += 1
            print(f"[INGEST] {document.title} ({document.id}) -> error: {job.error}")
        else:
            stored = services.tracker.get_document(document.id)
            print(f"[INGEST] {document.title} ({document.id}) -> {stored.chunk_count} chunks")
    return failed


async def search(services: Services, query: str, k: Optional[int], alpha: Optional[float], document_ids: Optional[List[str]]) -> None:
    filters = SearchFilters(document_ids=document_ids) if document_ids else None
    response = await services.search.search(query, k=k, alpha=alpha, filters=filters)
    print(f"[SEARCH] {len(response.results)} results in {response.latency_ms}ms (alpha={response.alpha:.2f})")
    for rank, r in enumerate(response.results, start=1):
        preview = " ".join(r.content.split())[:160]
        print(f"{rank:>2}. {r.fused_score:.4f} [{r.document_title or r.document_id}] {preview}")


def show_job(services: Services, document_id: str) -> int:
    jobs = services.tracker.list_jobs(document_id)
    if not jobs:
        print(f"[JOB] no job for {document_id}")
        return 1
    for job in jobs:
        line = f"[JOB] attempt {job.attempt}: {job.stage.value} {job.progress:.0f}%"
        if job.error:
            line += f" ({job.error})"
        print(line)
    return 0


def diagnose(services: Services) -> int:
    report = services.reporting.diagnostics()
    summary = report["summary"]
    print(
        f"[DIAG] {summary['total_documents']} documents, {summary['total_chunks']} chunks, "
        f"{summary['total_queries']} queries, embedding coverage {report['embedding_status']['coverage_percent']}%"
    )
    for issue in report["issues"]:
        print(f"[DIAG] issue: {issue}")
    return 1 if report["issues"] else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docindex", description="Chunk, embed and search documents.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_ingest = sub.add_parser("ingest", help="Process and index files")
    p_ingest.add_argument("paths", nargs="+", type=Path, help="Files to ingest")
    p_ingest.add_argument("--content-type", default=None, help="Override the MIME type guessed from the extension")

    p_search = sub.add_parser("search", help="Hybrid search over indexed chunks")
    p_search.add_argument("query", help="Query text")
    p_search.add_argument("-k", type=int, default=None, help="Number of results")
    p_search.add_argument("--alpha", type=float, default=None, help="Vector weight in [0, 1]")
    p_search.add_argument("--document", action="append", dest="documents", help="Restrict to a document id (repeatable)")

    p_job = sub.add_parser("job", help="Show the job history of a document")
    p_job.add_argument("document_id")

    sub.add_parser("diagnose", help="Report store consistency issues")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        services = build_services()
        if args.command == "ingest":
            missing = [p for p in args.paths if not p.is_file()]
            if missing:
                print(f"[INGEST] not a file: {', '.join(str(p) for p in missing)}", file=sys.stderr)
                return 2
            failed = asyncio.run(ingest(services, args.paths, args.content_type))
            return 1 if failed else 0
        if args.command == "search":
            asyncio.run(search(services, args.query, args.k, args.alpha, args.documents))
            return 0
        if args.command == "diagnose":
            return diagnose(services)
        return show_job(services, args.document_id)
    except DocIndexError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
