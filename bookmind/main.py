#!/usr/bin/env python3
"""Command-line front end: summaries and mind maps for an already-chaptered book."""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import re
import sys
import threading
from typing import Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .cache import ALL_FOR_DOCUMENT, CacheStore, document_identity
from .config import load_config, with_overrides
from .errors import PipelineError
from .loader import load_book, load_tags
from .mindmap import to_markdown
from .models import (
    BookType,
    Chapter,
    GroupResult,
    MindMapArtifact,
    PipelineState,
    ProcessingMode,
    StageKind,
    SummaryArtifact,
)
from .pipeline import BookPipeline, RunObserver
from .providers import check_connection, create_adapter

# ---------------- Config ----------------
OUT_DIR = "summaries"
CACHE_DIR = pathlib.Path.home() / ".cache" / "bookmind"

console = Console()


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# ---------------- Progress display ----------------
class ConsoleObserver(RunObserver):
    """Mirrors pipeline state onto a rich progress bar."""

    def __init__(self, progress: Progress) -> None:
        self.progress = progress
        self.task = progress.add_task("Starting…", total=100)

    def on_state(self, state: PipelineState) -> None:
        self.progress.update(self.task, completed=state.progress, description=state.step or "Working…")

    def on_group(self, result: GroupResult) -> None:
        if result.is_loading:
            console.print(f"[cyan]→ LLM call[/cyan] {result.group.display_title}")
        else:
            console.print(f"[green]✓[/green] {result.group.display_title}")

    def on_error(self, message: str) -> None:
        console.print(Panel.fit(message, title="Processing failed", style="bold red"))


# ---------------- Output ----------------
def write_markdown(path: pathlib.Path, content: str):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def safe_filename(title: str, fallback: str) -> str:
    return re.sub(r"[^-\w]+", "_", title).strip("_") or fallback


def write_summary_artifact(artifact: SummaryArtifact, out_dir: pathlib.Path) -> List[pathlib.Path]:
    written = []
    for i, result in enumerate(artifact.groups, start=1):
        name = safe_filename(result.group.display_title, f"group_{i}")
        out_md = out_dir / f"{i:02d}_{name}.md"
        write_markdown(out_md, f"# {result.group.display_title}\n\n{result.summary or ''}\n")
        written.append(out_md)

    lines = [f"# {artifact.title}\n"]
    if artifact.author:
        lines.append(f"_{artifact.author}_\n")
    lines.append("## Overall summary\n")
    lines.append(artifact.overall_summary + "\n")
    lines.append("## Chapter connections\n")
    lines.append(artifact.connections + "\n")
    if artifact.character_relationship:
        lines.append("## Character relationships\n")
        lines.append(f"```mermaid\n{artifact.character_relationship}\n```\n")
    lines.append("## Chapters\n")
    for path, result in zip(written, artifact.groups):
        lines.append(f"- {result.group.display_title} → `{path.name}`")
    index_md = out_dir / "_index.md"
    write_markdown(index_md, "\n".join(lines) + "\n")
    written.append(index_md)
    return written


def write_mind_map_artifact(artifact: MindMapArtifact, out_dir: pathlib.Path) -> List[pathlib.Path]:
    out_dir.mkdir(parents=True, exist_ok=True)
    mind_map_json = out_dir / "mindmap.json"
    mind_map_json.write_text(json.dumps(artifact.combined_mind_map, ensure_ascii=False, indent=2), encoding="utf-8")
    outline_md = out_dir / "mindmap.md"
    write_markdown(outline_md, f"# {artifact.title}\n\n{to_markdown(artifact.combined_mind_map)}")
    return [mind_map_json, outline_md]


def show_groups(chapters: List[Chapter], tags: Dict[str, str]):
    table = Table(title="Chapters", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Id")
    table.add_column("Title")
    table.add_column("Tag")
    table.add_column("Chars", justify="right")
    for i, ch in enumerate(chapters, start=1):
        table.add_row(str(i), ch.id, ch.title, tags.get(ch.id, ""), str(len(ch.content)))
    console.print(table)


# ---------------- Commands ----------------
def resolve_chapters(cache: CacheStore, doc_id: str, chapters: List[Chapter],
                     only: Optional[List[str]]) -> List[Chapter]:
    ids = [ch.id for ch in chapters]
    if only:
        unknown = [cid for cid in only if cid not in ids]
        if unknown:
            raise PipelineError(f"Unknown chapter ids: {', '.join(unknown)}")
        selected = [cid for cid in ids if cid in set(only)]
        cache.set_selected_chapters(doc_id, selected)
    else:
        selected = cache.get_selected_chapters(doc_id, ids) or ids
    chosen = set(selected)
    return [ch for ch in chapters if ch.id in chosen]


def run_book(args: argparse.Namespace) -> int:
    provider, settings = load_config(args.config)
    settings = with_overrides(
        settings,
        mode=ProcessingMode(args.mode) if args.mode else None,
        book_type=BookType(args.book_type) if args.book_type else None,
        output_language=args.language,
        custom_prompt=args.prompt,
        use_custom_only=True if args.custom_only else None,
        character_graph=True if args.characters else None,
    )

    book_path = pathlib.Path(args.book)
    meta, chapters = load_book(book_path)
    cache = CacheStore(args.cache_dir)
    doc_id = document_identity(book_path)

    ids = [ch.id for ch in chapters]
    if args.tags:
        tags = {k: v for k, v in load_tags(args.tags).items() if k in ids}
        cache.set_chapter_tags(doc_id, tags)
    else:
        tags = cache.get_chapter_tags(doc_id, ids)
    chapters = resolve_chapters(cache, doc_id, chapters, args.chapters)

    console.rule(f"[bold]Start[/bold]  Book: {meta.title}")
    console.print(f"Provider: [cyan]{provider.provider}[/cyan]  |  Model: [magenta]{provider.effective_model}[/magenta]")
    console.print(f"Mode: [green]{settings.mode.value}[/green]  |  Cache key: {doc_id}")
    show_groups(chapters, tags)

    pipeline = BookPipeline(cache)
    if args.force:
        removed = pipeline.clear_book(doc_id, settings.mode)
        console.print(f"[yellow]Cleared {removed} cached entries for this mode.[/yellow]")

    outcome: Dict[str, object] = {}

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        observer = ConsoleObserver(progress)

        def work():
            try:
                outcome["artifact"] = pipeline.run(doc_id, meta, chapters, tags, settings, provider, observer)
            except Exception as exc:  # re-raised on the main thread below
                outcome["error"] = exc

        worker = threading.Thread(target=work, name="bookmind-run", daemon=True)
        worker.start()
        try:
            while worker.is_alive():
                worker.join(0.2)
        except KeyboardInterrupt:
            console.print("[yellow]Cancelling…[/yellow]")
            pipeline.cancel()
            worker.join()

    error = outcome.get("error")
    if isinstance(error, PipelineError):
        # already shown by ConsoleObserver.on_error
        return 1
    if error is not None:
        raise error  # type: ignore[misc]
    artifact = outcome.get("artifact")
    if artifact is None:
        console.print("[yellow]Generation cancelled.[/yellow]")
        return 130

    out_dir = pathlib.Path(args.out)
    if isinstance(artifact, SummaryArtifact):
        written = write_summary_artifact(artifact, out_dir)
    else:
        written = write_mind_map_artifact(artifact, out_dir)
    console.rule("[bold green]Done[/bold green]")
    for path in written:
        console.print(f"[green]Wrote[/green] {path}")
    return 0


def clear_cache(args: argparse.Namespace) -> int:
    cache = CacheStore(args.cache_dir)
    doc_id = document_identity(pathlib.Path(args.book))
    pipeline = BookPipeline(cache)
    if args.kind:
        removed = pipeline.clear_stage(doc_id, StageKind(args.kind))
        scope = args.kind
    elif args.stage == ALL_FOR_DOCUMENT:
        removed = pipeline.clear_book(doc_id)
        scope = args.stage
    else:
        removed = pipeline.clear_book(doc_id, ProcessingMode(args.stage))
        scope = args.stage
    if removed:
        console.print(f"[green]Removed {removed} cached entries for {doc_id}.[/green]")
    else:
        console.print(f"[dim]Nothing cached for {doc_id} ({scope}).[/dim]")
    return 0


def ping(args: argparse.Namespace) -> int:
    provider, _ = load_config(args.config)
    console.print(f"Testing {provider!r}")
    with console.status("[bold cyan]Contacting backend…[/bold cyan]"):
        ok = check_connection(create_adapter(provider))
    console.print("[green]Connection successful[/green]" if ok else "[red]Connection failed[/red]")
    return 0 if ok else 1


def parse_args(argv: List[str]) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="LLM-driven summaries and mind maps for chaptered books.")
    ap.add_argument("--config", type=pathlib.Path, default=None, help="YAML config with provider/processing sections")
    ap.add_argument("--cache-dir", type=pathlib.Path, default=CACHE_DIR, help="Where stage results are cached")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Summarize a book or build its mind map")
    run.add_argument("book", help="Chapters as JSON ({title, author, chapters: [{id, title, content}]}) or markdown/text")
    run.add_argument("--mode", choices=[m.value for m in ProcessingMode], help="Processing mode")
    run.add_argument("--book-type", choices=[b.value for b in BookType], help="Fiction or non-fiction prompts")
    run.add_argument("--language", help="Output language code, e.g. en, zh, de")
    run.add_argument("--tags", type=pathlib.Path, help="JSON mapping of chapter id to tag; same tag = one group")
    run.add_argument("--chapters", nargs="+", help="Only process these chapter ids")
    run.add_argument("--prompt", help="Extra instructions appended to every chapter prompt")
    run.add_argument("--custom-only", action="store_true", help="Use --prompt instead of the built-in summary prompt")
    run.add_argument("--characters", action="store_true", help="Also draw a character relationship graph")
    run.add_argument("--out", default=OUT_DIR, help="Directory to write results")
    run.add_argument("--force", action="store_true", help="Drop cached results for this mode first")
    run.set_defaults(func=run_book)

    clear = sub.add_parser("clear-cache", help="Drop cached results for a book")
    clear.add_argument("book")
    scope = clear.add_mutually_exclusive_group()
    scope.add_argument(
        "--stage",
        default=ALL_FOR_DOCUMENT,
        choices=[ALL_FOR_DOCUMENT] + [m.value for m in ProcessingMode],
        help="Every stage of a processing mode, or all",
    )
    scope.add_argument("--kind", choices=[k.value for k in StageKind], help="A single stage kind only")
    clear.set_defaults(func=clear_cache)

    check = sub.add_parser("ping", help="Check that the configured backend answers")
    check.set_defaults(func=ping)
    return ap.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(args.verbose)
    try:
        return args.func(args)
    except PipelineError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
