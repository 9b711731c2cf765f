"""
DocuChat - CLI Entry Point
---------------------------
Typer commands over the ingestion service and the query pipeline.  The
FAISS index and document store are persisted under the paths configured
in ``config/config.yaml`` between invocations.

Usage:
    python -m docuchat.main ingest report.txt --org acme --title "Q3 Report"
    python -m docuchat.main ask "What is the monthly growth trend?" --org acme
    python -m docuchat.main ask "..." --org acme --folder finance --tag q3 --stream
    python -m docuchat.main delete <document-id>
    python -m docuchat.main status
"""
from __future__ import annotations

import json
from collections import Counter
from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table

from docuchat.config import AppConfig, load_config
from docuchat.documents.store import InMemoryDocumentStore
from docuchat.embedding.vector_index import VectorIndex, create_vector_index
from docuchat.exceptions import DocuChatError, MalformedInput
from docuchat.utils.helpers import truncate_text
from docuchat.utils.logger import setup_logger

app = typer.Typer(
    name="docuchat",
    help="DocuChat - document question answering with cited sources",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _bootstrap(config_path: Optional[str]) -> tuple[AppConfig, VectorIndex, InMemoryDocumentStore]:
    cfg = load_config(config_path)
    setup_logger(cfg.logging.level, cfg.logging.file, cfg.logging.json_file)
    index = create_vector_index(cfg.index, cfg.embedding.dimensions)
    documents = InMemoryDocumentStore.load(Path(cfg.index.store_path))
    return cfg, index, documents


def _persist(cfg: AppConfig, index: VectorIndex, documents: InMemoryDocumentStore) -> None:
    save = getattr(index, "save", None)
    if save is not None:
        save(Path(cfg.index.index_dir))
    documents.save(Path(cfg.index.store_path))


def _fail(exc: DocuChatError) -> NoReturn:
    console.print(f"[red]{type(exc).__name__}:[/red] {exc.message}")
    if exc.details:
        console.print(f"[dim]{exc.details}[/dim]")
    raise typer.Exit(1)


_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to config.yaml")


# --- Commands -----------------------------------------------------------------

@app.command()
def ingest(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Text file to ingest"),
    org: str = typer.Option(..., "--org", help="Owning organization id"),
    user: Optional[str] = typer.Option(None, "--user", help="Owning user id"),
    title: Optional[str] = typer.Option(None, "--title", help="Display title (default: file name)"),
    mime: str = typer.Option("text/plain", "--mime", help="MIME type of the file"),
    folder: Optional[str] = typer.Option(None, "--folder", help="Folder id"),
    tag: Optional[list[str]] = typer.Option(None, "--tag", help="Tag (repeatable)"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Register a text file and chunk, embed and index it."""
    from docuchat.ingestion.pipeline import IngestionService

    cfg, index, documents = _bootstrap(config)
    service = IngestionService.from_config(cfg, index=index, documents=documents)

    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        _fail(MalformedInput("File is not UTF-8 text", {"path": str(path), "reason": exc.reason}))
    doc = service.register(
        title=title or path.name,
        organization_id=org,
        user_id=user,
        mime=mime,
        folder_id=folder,
        tags=tag or [],
    )

    try:
        with console.status(f"[cyan]Ingesting {doc.title}...[/cyan]"):
            result = service.ingest(doc.id, text)
    except DocuChatError as exc:
        documents.save(Path(cfg.index.store_path))
        _fail(exc)

    _persist(cfg, index, documents)
    console.print(
        f"[green][OK][/green] {doc.title} | id=[bold]{doc.id}[/bold] | "
        f"{result.chunk_count} chunk(s) | {result.elapsed_ms / 1000:.1f}s"
    )


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to answer"),
    org: str = typer.Option(..., "--org", help="Organization to search"),
    user: Optional[str] = typer.Option(None, "--user", help="Restrict to one user's documents"),
    folder: Optional[str] = typer.Option(None, "--folder", help="Restrict to a folder"),
    tag: Optional[list[str]] = typer.Option(None, "--tag", help="Require tag (repeatable)"),
    stream: bool = typer.Option(False, "--stream", help="Print tokens as they arrive"),
    json_out: bool = typer.Option(False, "--json", help="Print result as JSON"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Answer a question from the organization's ready documents."""
    from docuchat.schemas import QueryScope
    from docuchat.serving.pipeline import RAGPipeline

    cfg, index, documents = _bootstrap(config)
    pipeline = RAGPipeline.from_config(cfg, index=index, documents=documents)
    scope = QueryScope(organization_id=org, user_id=user, folder_id=folder, tags=tag or [])

    def _on_token(token: str) -> None:
        console.print(token, end="", markup=False, highlight=False)

    try:
        if stream and not json_out:
            result = pipeline.query(question, scope, stream=True, on_token=_on_token)
            console.print()
        elif json_out:
            result = pipeline.query(question, scope)
        else:
            with console.status("[cyan]Thinking...[/cyan]"):
                result = pipeline.query(question, scope)
    except DocuChatError as exc:
        _fail(exc)

    if json_out:
        console.print_json(json.dumps(result.to_dict(), default=str))
        return
    _print_result(result, show_answer=not stream)


def _print_result(result, show_answer: bool = True) -> None:
    """Render a QueryResult to the terminal using Rich."""
    if show_answer:
        console.print()
        console.print(
            Panel(
                Markdown(result.answer),
                title="[bold green]Answer[/bold green]",
                border_style="green",
                expand=True,
            )
        )

    if result.citations:
        table = Table(
            "No.", "Document", "Page", "Similarity",
            box=box.SIMPLE,
            show_header=True,
            header_style="bold dim",
        )
        for cit in result.citations:
            table.add_row(
                str(cit.ordinal),
                truncate_text(cit.document_title, 55),
                "-" if cit.page is None else str(cit.page),
                f"{cit.similarity:.2f}",
            )
        console.print(table)
    elif result.no_context:
        console.print("[yellow]No relevant passages in scope.[/yellow]")

    total_s = result.total_ms / 1000
    console.print(
        f"[dim]"
        f"embed={result.embedding_ms:.0f}ms  "
        f"retrieve={result.retrieval_ms:.0f}ms  "
        f"generate={result.generation_ms:.0f}ms  "
        f"total={total_s:.1f}s  |  "
        f"tokens={result.prompt_tokens}+{result.completion_tokens}  "
        f"cost=${result.estimated_cost_usd:.5f}"
        f"[/dim]\n"
    )


@app.command()
def delete(
    document_id: str = typer.Argument(..., help="Document id to delete"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Delete a document and every indexed chunk derived from it."""
    from docuchat.ingestion.pipeline import IngestionService

    cfg, index, documents = _bootstrap(config)
    if documents.get(document_id) is None:
        console.print(f"[yellow]Document not found: {document_id}[/yellow]")
        raise typer.Exit(1)

    service = IngestionService.from_config(cfg, index=index, documents=documents)
    try:
        removed = service.delete_document(document_id)
    except DocuChatError as exc:
        _fail(exc)

    _persist(cfg, index, documents)
    console.print(f"[green][OK][/green] Deleted {document_id} | {removed} chunk(s) removed")


@app.command()
def status(
    org: Optional[str] = typer.Option(None, "--org", help="Only this organization"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Show documents by status and the size of the vector index."""
    cfg, index, documents = _bootstrap(config)
    docs = documents.list_documents(org)
    counts = Counter(d.status.value for d in docs)

    console.print()
    console.print(f"[bold]DocuChat[/bold] | env={cfg.environment} | backend={cfg.index.backend}")
    console.print(f"  Documents : {len(docs)}")
    for state in ("pending", "processing", "ready", "error"):
        console.print(f"  {state:<10}: {counts.get(state, 0)}")
    console.print(f"  Vectors   : [green]{index.count():,}[/green]")

    failed = [d for d in docs if d.error]
    if failed:
        table = Table("Document", "Title", "Error", box=box.SIMPLE, header_style="bold dim")
        for d in failed:
            table.add_row(d.id, truncate_text(d.title, 40), truncate_text(d.error or "", 60))
        console.print(table)
    console.print()


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
