from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Optional, Sequence

from rich.console import Console

from notes_rag.config.settings import AppConfig
from notes_rag.errors import RAGError
from notes_rag.rag.indexer import IndexRunResult
from notes_rag.rag.retriever import RetrievalOutcome
from notes_rag.rag.service import RAGService, SearchOptions
from notes_rag.rag.vector_store import SearchFilter

console = Console()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notes-rag",
        description="Index a directory of Markdown notes and search it semantically.",
    )
    parser.add_argument("--notes-dir", type=str, default=None, help="Notes directory (default: NOTES_RAG_NOTES_DIR or .).")
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    index_parser = subparsers.add_parser("index", help="Index new and changed notes.")
    index_parser.add_argument("--full", action="store_true", help="Rebuild the whole index from scratch.")

    search_parser = subparsers.add_parser("search", help="Search the index.")
    search_parser.add_argument("query", type=str, help="Search query.")
    search_parser.add_argument("-k", type=int, default=None, help="Number of passages to return.")
    search_parser.add_argument("--min-score", type=float, default=None, help="Drop passages scoring below this.")
    search_parser.add_argument("--prefix", type=str, default=None, help="Only search notes under this path.")

    return parser


def _print_index(result: IndexRunResult, as_json: bool) -> None:
    if as_json:
        console.print_json(json.dumps(result.to_dict()))
        return
    status = "[yellow]cancelled[/yellow]" if result.cancelled else "[green]done[/green]"
    console.print(
        f"Index {status}: {result.processed} processed, {result.skipped} skipped, "
        f"{len(result.failed)} failed, {result.removed} removed ({result.elapsed_ms} ms)"
    )
    for path, error in result.failed:
        console.print(f"  [red]failed[/red] {path}: {error.cause}")


def _print_search(outcome: RetrievalOutcome, as_json: bool) -> None:
    if as_json:
        console.print_json(json.dumps([p.to_dict() for p in outcome]))
        return
    if not outcome:
        console.print("No matching passages.")
        return
    for p in outcome:
        where = " > ".join(p.heading_path)
        console.print(f"[bold]{p.source_path}[/bold] {where} [dim]({p.score:.3f})[/dim]", markup=True)
        console.print(p.content.strip(), markup=False)
        console.print()


async def _run(args: argparse.Namespace, config: AppConfig) -> int:
    service = RAGService(config)
    try:
        await service.initialize()
        if args.command == "index":
            result = await (service.index_all() if args.full else service.index_incremental())
            _print_index(result, args.json)
            return 1 if result.failed else 0
        elif args.command == "search":
            options = SearchOptions(
                k=args.k,
                min_score=args.min_score,
                filter=SearchFilter(path_prefix=args.prefix) if args.prefix else None,
            )
            _print_search(await service.search(args.query, options), args.json)
            return 0
        return 2
    finally:
        await service.close()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        config = AppConfig.from_env()
        if args.notes_dir:
            config.notes_dir = args.notes_dir
        logging.basicConfig(
            level=config.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        return asyncio.run(_run(args, config))
    except (RAGError, ValueError) as exc:
        console.print(f"[red]error:[/red] {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
