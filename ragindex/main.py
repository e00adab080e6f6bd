"""
ragindex - CLI Entry Point
--------------------------
Typer commands over the indexing core.

Usage:
    python -m ragindex.main init                                  # tables + collection
    python -m ragindex.main ingest notes.md --org o1 --course c1  # chunk, embed, index
    python -m ragindex.main search "late chunking" --org o1       # hybrid search
    python -m ragindex.main delete <document_id>
    python -m ragindex.main delete-course <course_id> --org o1
    python -m ragindex.main stats --org o1                        # dedup stats
    python -m ragindex.main corpus-export data/corpus.json
    python -m ragindex.main corpus-import data/corpus.json
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ragindex.config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from ragindex.errors import RagIndexError
from ragindex.schemas import SearchFilters, SearchOptions, TenantContext, UploadedFile
from ragindex.utils.helpers import load_json, save_json, truncate_text
from ragindex.utils.logger import setup_logger

app = typer.Typer(
    name="ragindex",
    help="Course content indexing and hybrid retrieval CLI",
    add_completion=False,
)
console = Console()

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config YAML")


# --- Helpers ------------------------------------------------------------------

def _config(path: str) -> AppConfig:
    cfg = load_config(path)
    setup_logger(cfg.logging.level, cfg.logging.file, cfg.logging.components)
    return cfg


def _services(cfg: AppConfig):
    from ragindex.serving.services import RAGServices

    services = RAGServices(cfg)
    services.initialize()
    return services


def _fail(exc: RagIndexError) -> None:
    console.print(f"[red]{type(exc).__name__}:[/red] {exc}")
    raise typer.Exit(1)


# --- Commands -----------------------------------------------------------------

@app.command()
def init(config: str = ConfigOption) -> None:
    """Create metadata tables and the vector collection."""
    cfg = _config(config)
    with _services(cfg):
        console.print(f"[green][OK][/green] Collection [bold]{cfg.qdrant.collection}[/bold] and tables ready")


@app.command()
def ingest(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="File to ingest"),
    org: str = typer.Option(..., "--org", help="Organization id"),
    course: str = typer.Option(..., "--course", help="Course id"),
    mime_type: Optional[str] = typer.Option(None, "--mime", help="Override detected MIME type"),
    config: str = ConfigOption,
) -> None:
    """Ingest one file: dedup check, chunk, embed, index."""
    cfg = _config(config)
    with _services(cfg) as services:
        try:
            with console.status(f"[cyan]Ingesting {path.name}...[/cyan]"):
                result = services.ingest(
                    UploadedFile.from_path(path, mime_type),
                    TenantContext(organization_id=org, course_id=course),
                )
        except RagIndexError as exc:
            _fail(exc)

        console.print(
            Panel(
                f"document_id : [bold]{result.document_id}[/bold]\n"
                f"deduplicated: {result.deduplicated}"
                + (f" (original {result.original_document_id})" if result.original_document_id else "")
                + f"\nstatus      : {result.vector_status.value}\n"
                f"chunks      : {result.chunk_count}\n"
                f"copied pts  : {result.vectors_duplicated}",
                title="[bold green]Ingested[/bold green]",
                box=box.ROUNDED,
                expand=False,
            )
        )
        usage = services.embedder.usage_summary()
        console.print(
            f"[dim]provider calls={usage['total_api_calls']} tokens={usage['total_tokens_used']} "
            f"cache hits={usage['cache_hits']}[/dim]"
        )


@app.command()
def search(
    query: str = typer.Argument(..., help="Search query"),
    org: str = typer.Option(..., "--org", help="Organization id"),
    course: Optional[str] = typer.Option(None, "--course", help="Restrict to a course"),
    limit: int = typer.Option(10, "--limit", "-k", min=1, max=100),
    dense_only: bool = typer.Option(False, "--dense-only", help="Disable BM25 + RRF"),
    parents: bool = typer.Option(False, "--parents", help="Attach parent chunk context"),
    json_out: bool = typer.Option(False, "--json", help="Print raw JSON"),
    config: str = ConfigOption,
) -> None:
    """Hybrid (dense + BM25, RRF fused) search within a tenant."""
    cfg = _config(config)
    with _services(cfg) as services:
        try:
            response = services.search(
                query,
                TenantContext(organization_id=org, course_id=course),
                SearchFilters(organization_id=org, course_id=course),
                SearchOptions(limit=limit, enable_hybrid=not dense_only, include_parent_context=parents),
            )
        except RagIndexError as exc:
            _fail(exc)

        if json_out:
            console.print_json(json.dumps(response.model_dump(mode="json")))
            return

        table = Table("#", "Score", "Source", "Heading", "Content", box=box.SIMPLE, header_style="bold dim")
        for i, r in enumerate(response.results, start=1):
            table.add_row(
                str(i),
                f"{r.score:.4f}",
                r.rank_source.value,
                truncate_text(" > ".join(r.payload.get("heading_path", [])), 40),
                truncate_text(r.content.replace("\n", " "), 80),
            )
        console.print(table)
        meta = response.metadata
        console.print(
            f"[dim]{meta['total_results']} results | {meta['search_type']} | "
            f"cached={meta.get('cached')} | {meta.get('latency_ms', 0)}ms[/dim]"
        )


@app.command()
def delete(document_id: str = typer.Argument(...), config: str = ConfigOption) -> None:
    """Delete a document (reference-count aware)."""
    cfg = _config(config)
    with _services(cfg) as services:
        try:
            result = services.delete(document_id)
        except RagIndexError as exc:
            _fail(exc)
        console.print(
            f"[green][OK][/green] {document_id} deleted | vectors={result.vectors_deleted} | "
            f"remaining references={result.remaining_references} | "
            f"physical file {'removed' if result.physical_deleted else 'kept'}"
        )


@app.command("delete-course")
def delete_course(
    course_id: str = typer.Argument(...),
    org: Optional[str] = typer.Option(None, "--org", help="Organization id"),
    config: str = ConfigOption,
) -> None:
    """Delete every document of a course."""
    cfg = _config(config)
    with _services(cfg) as services:
        try:
            results = services.delete_course(course_id, org)
        except RagIndexError as exc:
            _fail(exc)
        physical = sum(1 for r in results if r.physical_deleted)
        console.print(f"[green][OK][/green] {len(results)} documents deleted ({physical} physical files removed)")


@app.command()
def stats(org: Optional[str] = typer.Option(None, "--org"), config: str = ConfigOption) -> None:
    """Show deduplication statistics."""
    cfg = _config(config)
    with _services(cfg) as services:
        s = services.deduplication_stats(org)
        table = Table("Metric", "Value", box=box.SIMPLE, header_style="bold dim")
        table.add_row("Original files", str(s.original_files))
        table.add_row("Reference files", str(s.reference_files))
        table.add_row("Deduplication ratio", f"{s.deduplication_ratio:.1%}")
        table.add_row("Storage saved", f"{s.storage_saved_bytes:,} bytes")
        table.add_row("Logical storage", f"{s.total_storage_used_bytes:,} bytes")
        console.print(table)


@app.command("corpus-export")
def corpus_export(path: Path = typer.Argument(...), config: str = ConfigOption) -> None:
    """Write BM25 corpus statistics to a JSON file."""
    cfg = _config(config)
    with _services(cfg) as services:
        state = services.stats.export()
        save_json(state, path)
        console.print(
            f"[green][OK][/green] {state['total_chunks']} chunks, "
            f"{len(state['document_frequency'])} terms -> {path}"
        )


@app.command("corpus-import")
def corpus_import(path: Path = typer.Argument(..., exists=True, dir_okay=False), config: str = ConfigOption) -> None:
    """Replace BM25 corpus statistics from a JSON export."""
    cfg = _config(config)
    with _services(cfg) as services:
        try:
            services.stats.import_state(load_json(path))
        except RagIndexError as exc:
            _fail(exc)
        console.print(f"[green][OK][/green] Corpus statistics imported from {path}")


if __name__ == "__main__":
    app()
