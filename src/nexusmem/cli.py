"""Command line interface for nexusmem."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console

from nexusmem.config import AppConfig
from nexusmem.context.assembler import ContextAssembler, render
from nexusmem.context.sprint import VaultSprintSource
from nexusmem.embedding.encoder import EmbeddingService
from nexusmem.errors import InitializationError, StoreError
from nexusmem.index.indexer import Indexer
from nexusmem.index.search import Searcher
from nexusmem.index.storage import QdrantVectorStore
from nexusmem.utils.files import iter_indexable_paths
from nexusmem.watcher import ChangeWatcher


console = Console()
err_console = Console(stderr=True)
app = typer.Typer(help="nexusmem - local semantic memory for project workspaces")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _load_embeddings(config: AppConfig, *, required: bool) -> EmbeddingService:
    """Initialize the embedding service; exit on failure unless optional."""
    service = EmbeddingService()
    model_path, tokenizer_path = config.resolve_model_paths(Path.cwd())
    try:
        service.initialize(model_path, tokenizer_path)
    except InitializationError as exc:
        if required:
            console.print(f"[red]Cannot load embedding model:[/red] {exc}")
            raise typer.Exit(code=1)
        err_console.print(f"[yellow]Semantic search disabled:[/yellow] {exc}")
    return service


def _open_store(config: AppConfig, dimension: int) -> QdrantVectorStore:
    return QdrantVectorStore(
        config.qdrant_url, collection_name=config.collection_name, dimension=dimension
    )


@app.command()
def index(
    inputs: List[Path] = typer.Argument(..., help="Files or folders to index.", resolve_path=True),
    project: str = typer.Option(..., "--project", "-p", help="Project identifier"),
    qdrant_url: str = typer.Option(AppConfig().qdrant_url, "--qdrant-url", help="Qdrant URL"),
    model: Optional[Path] = typer.Option(None, "--model", help="ONNX model path"),
    tokenizer: Optional[Path] = typer.Option(None, "--tokenizer", help="tokenizer.json path"),
    chunk_chars: int = typer.Option(AppConfig().chunk_chars, help="Chunk size in characters"),
    overlap: int = typer.Option(AppConfig().overlap, help="Chunk overlap"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index files for a project."""
    _setup_logging(verbose)
    config = AppConfig(
        qdrant_url=qdrant_url,
        model_path=model,
        tokenizer_path=tokenizer,
        chunk_chars=chunk_chars,
        overlap=overlap,
    )

    paths = list(iter_indexable_paths(inputs, config.watched_extensions))
    if not paths:
        console.print("[yellow]No indexable files found.[/yellow]")
        return

    embedder = _load_embeddings(config, required=True)
    store = _open_store(config, embedder.dimension)
    indexer = Indexer(
        embedder,
        store,
        chunk_chars=config.chunk_chars,
        overlap=config.overlap,
        extensions=config.watched_extensions,
    )

    console.print(f"Indexing into [bold]{config.collection_name}[/bold] at {config.qdrant_url}...")
    stats = indexer.index(paths, project)
    console.print(
        f"Indexed: {stats.indexed} ({stats.chunks} chunks), "
        f"skipped: {stats.skipped}, failed: {stats.failed}"
    )
    store.close()


@app.command()
def watch(
    roots: List[Path] = typer.Argument(..., help="Folders to watch.", resolve_path=True),
    project: str = typer.Option(..., "--project", "-p", help="Project identifier"),
    qdrant_url: str = typer.Option(AppConfig().qdrant_url, "--qdrant-url", help="Qdrant URL"),
    model: Optional[Path] = typer.Option(None, "--model", help="ONNX model path"),
    tokenizer: Optional[Path] = typer.Option(None, "--tokenizer", help="tokenizer.json path"),
    debounce: float = typer.Option(AppConfig().debounce_seconds, help="Debounce window in seconds"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Watch folders and index changed files until interrupted."""
    _setup_logging(verbose)
    config = AppConfig(
        qdrant_url=qdrant_url,
        model_path=model,
        tokenizer_path=tokenizer,
        debounce_seconds=debounce,
    )

    embedder = _load_embeddings(config, required=True)
    store = _open_store(config, embedder.dimension)
    indexer = Indexer(
        embedder,
        store,
        chunk_chars=config.chunk_chars,
        overlap=config.overlap,
        extensions=config.watched_extensions,
    )
    watcher = ChangeWatcher(
        indexer,
        debounce_seconds=config.debounce_seconds,
        extensions=config.watched_extensions,
        architecture_filename=config.architecture_filename,
    ).start()
    watcher.watch_project(project, roots)

    console.print(f"Watching [bold]{project}[/bold]. Press Ctrl+C to stop.")
    try:
        while watcher.is_running:
            time.sleep(1.0)
    except KeyboardInterrupt:
        console.print("Stopping watcher...")
    finally:
        watcher.shutdown()
        store.close()


@app.command()
def context(
    query: str = typer.Argument(..., help="User request to build context for"),
    project: str = typer.Option(..., "--project", "-p", help="Project identifier"),
    root: List[Path] = typer.Option([], "--root", "-r", help="Project root (repeatable)"),
    sprint: Optional[str] = typer.Option(None, "--sprint", help="Override the active sprint id"),
    qdrant_url: str = typer.Option(AppConfig().qdrant_url, "--qdrant-url", help="Qdrant URL"),
    model: Optional[Path] = typer.Option(None, "--model", help="ONNX model path"),
    tokenizer: Optional[Path] = typer.Option(None, "--tokenizer", help="tokenizer.json path"),
    top_k: int = typer.Option(AppConfig().top_k, help="Number of architecture snippets"),
    threshold: float = typer.Option(
        AppConfig().relevance_threshold, help="Minimum similarity score"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Print the assembled context block for a request."""
    _setup_logging(verbose)
    config = AppConfig(
        qdrant_url=qdrant_url,
        model_path=model,
        tokenizer_path=tokenizer,
        top_k=top_k,
        relevance_threshold=threshold,
    )

    embedder = _load_embeddings(config, required=False)
    store = _open_store(config, embedder.dimension)
    searcher = Searcher(
        store, top_k=config.top_k, relevance_threshold=config.relevance_threshold
    )
    with ContextAssembler(embedder, searcher, VaultSprintSource(active_sprint=sprint)) as assembler:
        assembled = assembler.get_context(query, project, roots=root)

    console.print(render(assembled), markup=False, highlight=False)
    store.close()


@app.command()
def prune(
    project: str = typer.Option(..., "--project", "-p", help="Project identifier"),
    qdrant_url: str = typer.Option(AppConfig().qdrant_url, "--qdrant-url", help="Qdrant URL"),
) -> None:
    """Remove points whose files no longer exist on disk."""
    config = AppConfig(qdrant_url=qdrant_url)
    store = _open_store(config, EmbeddingService().dimension)
    try:
        removed = store.remove_missing_files(project)
    except StoreError as exc:
        console.print(f"[red]Prune failed:[/red] {exc}")
        raise typer.Exit(code=1)
    finally:
        store.close()
    console.print(f"Removed {removed} missing files from the index.")


if __name__ == "__main__":  # pragma: no cover
    app()
