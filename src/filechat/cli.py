"""Command line interface for filechat."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn
from rich.table import Table

from filechat.config import AppConfig, IndexSettings, RetrievalSettings
from filechat.errors import FileChatError
from filechat.index.indexer import IndexStats
from filechat.library import IndexJob, Library
from filechat.models import FileStatus, IndexProgress, IndexTarget, TargetKind

console = Console()
app = typer.Typer(help="filechat - chat with your local documents through Ollama")
targets_app = typer.Typer(help="Manage the files and folders that get indexed")
app.add_typer(targets_app, name="targets")

_STATUS_STYLES = {
    FileStatus.NEW: "green",
    FileStatus.CHANGED: "yellow",
    FileStatus.INDEXED: "dim",
    FileStatus.MISSING: "red",
}

DbOption = typer.Option(None, "--db", help="SQLite database path")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


@contextmanager
def _library(db: Optional[Path]) -> Iterator[Library]:
    config = AppConfig(db_path=db if db is not None else AppConfig().db_path)
    config.db_path = config.resolve_db_path(Path.cwd())
    try:
        library = Library(config)
    except FileChatError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    try:
        yield library
    except FileChatError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        library.close()


def _print_stats(stats: IndexStats | None) -> None:
    if stats is None:
        return
    console.print(
        f"Indexed: {stats.indexed}, skipped: {stats.skipped}, "
        f"missing: {stats.missing}, failed: {stats.failed}"
    )
    if stats.cancelled:
        console.print("[yellow]Indexing was cancelled.[/yellow]")
    for path, message in stats.errors.items():
        console.print(f"[red]{path}[/red]: {message}")


def _run_job(start) -> IndexStats | None:
    """Start an indexing job through ``start(progress)`` and render its progress."""
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        console=console,
        transient=True,
    ) as bar:
        task = bar.add_task("Indexing", total=None)

        def on_progress(event: IndexProgress) -> None:
            label = Path(event.file).name if event.file else event.status
            bar.update(task, completed=event.current, total=event.total or None, description=label)

        job: IndexJob = start(on_progress)
        try:
            return job.wait()
        except KeyboardInterrupt:
            job.cancel()
            return job.wait()


def _index_settings(chunk_size: int, overlap: int, ocr: bool, ocr_lang: str) -> IndexSettings:
    return IndexSettings(chunk_size=chunk_size, chunk_overlap=overlap, ocr_enabled=ocr, ocr_lang=ocr_lang)


# -- targets -----------------------------------------------------------------


@targets_app.command("add")
def targets_add(
    paths: List[Path] = typer.Argument(..., help="Files or folders to index.", resolve_path=True),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="Include subfolders"),
    db: Path = DbOption,
) -> None:
    """Register files or folders as index targets."""
    with _library(db) as library:
        targets = library.list_targets()
        known = {(t.path, t.kind) for t in targets}
        for path in paths:
            if not path.exists():
                raise typer.BadParameter(f"Path not found: {path}")
            kind = TargetKind.FOLDER if path.is_dir() else TargetKind.FILE
            if (path, kind) in known:
                console.print(f"[dim]Already registered: {path}[/dim]")
                continue
            targets.append(IndexTarget(path=path, kind=kind, include_subfolders=recursive))
            known.add((path, kind))
        library.save_targets(targets)
        console.print(f"{len(targets)} targets registered.")


@targets_app.command("list")
def targets_list(db: Path = DbOption) -> None:
    """Show registered targets."""
    with _library(db) as library:
        targets = library.list_targets()
    if not targets:
        console.print("[yellow]No targets registered.[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Kind")
    table.add_column("Path")
    table.add_column("Subfolders")
    for target in targets:
        recursive = "yes" if target.include_subfolders else "-"
        table.add_row(target.kind.value, str(target.path), recursive)
    console.print(table)


@targets_app.command("remove")
def targets_remove(
    paths: List[Path] = typer.Argument(..., help="Targets to unregister.", resolve_path=True),
    prune: bool = typer.Option(True, help="Drop indexed files no longer covered by any target"),
    db: Path = DbOption,
) -> None:
    """Unregister targets and optionally prune their files from the index."""
    with _library(db) as library:
        drop = set(paths)
        remaining = [t for t in library.list_targets() if t.path not in drop]
        library.save_targets(remaining)
        console.print(f"{len(remaining)} targets registered.")
        if prune:
            removed = library.prune_index(remaining)
            console.print(f"Removed {removed} files from the index.")


@targets_app.command("clear")
def targets_clear(db: Path = DbOption) -> None:
    """Unregister every target. The index is kept until ``prune`` runs."""
    with _library(db) as library:
        library.save_targets([])
    console.print("All targets removed.")


# -- indexing ----------------------------------------------------------------


@app.command()
def preview(
    db: Path = DbOption,
    model: str = typer.Option(AppConfig().embed_model, help="Embedding model name"),
) -> None:
    """Show what the next index run would do."""
    with _library(db) as library:
        files = library.preview_index(library.list_targets(), model)
    if not files:
        console.print("[yellow]No documents found under the registered targets.[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Status")
    table.add_column("Kind")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    for item in files:
        style = _STATUS_STYLES[item.status]
        table.add_row(f"[{style}]{item.status.value}[/{style}]", item.kind.value, str(item.path), str(item.size))
    console.print(table)


@app.command()
def index(
    db: Path = DbOption,
    model: str = typer.Option(AppConfig().embed_model, help="Embedding model name"),
    chunk_size: int = typer.Option(IndexSettings().chunk_size, help="Chunk size in characters"),
    overlap: int = typer.Option(IndexSettings().chunk_overlap, help="Chunk overlap"),
    ocr: bool = typer.Option(True, help="OCR pages with little embedded text"),
    ocr_lang: str = typer.Option(IndexSettings().ocr_lang, help="Tesseract language"),
    verbose: bool = VerboseOption,
) -> None:
    """Index new and changed documents under the registered targets."""
    _setup_logging(verbose)
    with _library(db) as library:
        targets = library.list_targets()
        if not targets:
            console.print("[yellow]No targets registered. Use 'filechat targets add' first.[/yellow]")
            return
        settings = _index_settings(chunk_size, overlap, ocr, ocr_lang)
        console.print(f"Indexing into [bold]{library.store.db_path}[/bold]...")
        stats = _run_job(lambda progress: library.start_index(targets, model, settings, progress))
        _print_stats(stats)


@app.command()
def reindex(
    paths: List[Path] = typer.Argument(..., help="Files to re-index.", resolve_path=True),
    db: Path = DbOption,
    model: str = typer.Option(AppConfig().embed_model, help="Embedding model name"),
    chunk_size: int = typer.Option(IndexSettings().chunk_size, help="Chunk size in characters"),
    overlap: int = typer.Option(IndexSettings().chunk_overlap, help="Chunk overlap"),
    ocr: bool = typer.Option(True, help="OCR pages with little embedded text"),
    ocr_lang: str = typer.Option(IndexSettings().ocr_lang, help="Tesseract language"),
    verbose: bool = VerboseOption,
) -> None:
    """Re-index specific files even if they look unchanged."""
    _setup_logging(verbose)
    with _library(db) as library:
        settings = _index_settings(chunk_size, overlap, ocr, ocr_lang)
        stats = _run_job(lambda progress: library.reindex_files(paths, model, settings, progress))
        _print_stats(stats)


@app.command()
def prune(
    db: Path = DbOption,
    missing: bool = typer.Option(False, "--missing", help="Also drop files that no longer exist on disk"),
) -> None:
    """Remove indexed files that are no longer covered by any target."""
    with _library(db) as library:
        removed = library.prune_index(library.list_targets())
        if missing:
            removed += library.store.remove_missing_files()
    console.print(f"Removed {removed} files from the index.")


# -- querying ----------------------------------------------------------------


def _retrieval_settings(
    top_k: int, max_distance: Optional[float], mmr: bool, mmr_lambda: float, hybrid: bool = False
) -> RetrievalSettings:
    return RetrievalSettings(
        top_k=top_k, max_distance=max_distance, use_mmr=mmr, mmr_lambda=mmr_lambda, hybrid=hybrid
    )


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    db: Path = DbOption,
    model: str = typer.Option(AppConfig().embed_model, help="Embedding model name"),
    top_k: int = typer.Option(RetrievalSettings().top_k, help="Number of results to display"),
    max_distance: Optional[float] = typer.Option(None, help="Drop hits farther than this cosine distance"),
    mmr: bool = typer.Option(False, help="Diversify results with Maximal Marginal Relevance"),
    mmr_lambda: float = typer.Option(RetrievalSettings().mmr_lambda, help="MMR relevance weight"),
    hybrid: bool = typer.Option(False, help="Fuse keyword (BM25) ranks into the ranking"),
    verbose: bool = VerboseOption,
) -> None:
    """Show the chunks most relevant to a query."""
    _setup_logging(verbose)
    with _library(db) as library:
        settings = _retrieval_settings(top_k, max_distance, mmr, mmr_lambda, hybrid)
        hits = library.retrieve(query, model, settings)

    if not hits:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Distance")
    table.add_column("Document")
    table.add_column("Page")
    table.add_column("Snippet")

    for hit in hits:
        snippet = hit.snippet.replace("\n", " ")
        table.add_row(f"{hit.distance:.4f}", str(hit.file_path), str(hit.page + 1), snippet[:180])

    console.print(table)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question about your documents"),
    db: Path = DbOption,
    model: str = typer.Option(AppConfig().embed_model, help="Embedding model name"),
    chat_model: str = typer.Option(AppConfig().chat_model, help="Chat model name"),
    top_k: int = typer.Option(RetrievalSettings().top_k, help="Number of sources"),
    max_distance: Optional[float] = typer.Option(None, help="Drop sources farther than this cosine distance"),
    mmr: bool = typer.Option(False, help="Diversify sources with Maximal Marginal Relevance"),
    mmr_lambda: float = typer.Option(RetrievalSettings().mmr_lambda, help="MMR relevance weight"),
    hybrid: bool = typer.Option(False, help="Fuse keyword (BM25) ranks into the ranking"),
    verbose: bool = VerboseOption,
) -> None:
    """Answer a question from the indexed documents."""
    _setup_logging(verbose)
    with _library(db) as library:
        result = library.chat(
            question, chat_model, model, _retrieval_settings(top_k, max_distance, mmr, mmr_lambda, hybrid)
        )

    console.print(result.answer)
    if result.sources:
        console.print()
        for number, hit in enumerate(result.sources, start=1):
            console.print(f"[dim][{number}] {hit.file_path} (page {hit.page + 1})[/dim]")


@app.command()
def status(db: Path = DbOption) -> None:
    """Check Ollama and show index statistics."""
    with _library(db) as library:
        setup = library.setup_status()
        stats = library.stats()

    if setup.reachable:
        console.print(f"Ollama: [green]reachable[/green] ({len(setup.models)} models)")
    else:
        console.print(f"Ollama: [red]unreachable[/red] {setup.error or ''}")
    for name in setup.missing_models:
        console.print(f"[yellow]Missing model: {name}[/yellow] (run 'ollama pull {name}')")
    console.print(
        f"Files: {stats['file_count']}, chunks: {stats['chunk_count']}, "
        f"embedding model: {stats['embedding_model'] or '-'}"
    )


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    db: Path = DbOption,
) -> None:
    """Start the HTTP API."""
    import uvicorn

    from filechat.web.app import app as web_app, configure

    config = AppConfig(db_path=db if db is not None else AppConfig().db_path)
    resolved_db = config.resolve_db_path(Path.cwd())
    configure(AppConfig(db_path=resolved_db))

    console.print(f"Starting web API on http://{host}:{port} (database: {resolved_db})")
    uvicorn.run(
        web_app,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    app()
