"""Command Line Interface for the Clinical-RAG pipeline.

This module provides a CLI using Typer for ingesting clinical records,
answering clinical queries over them, scanning text for PHI and reporting on
the audit trail.

Security Impact:
    - PHI scans print kinds and offsets only, never the matched values
    - Query answers pass through response validation before display
    - Every command runs with the PHI-redacting log filter attached
"""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from clinical_rag import __version__
from clinical_rag.domain.ports import PipelineError
from clinical_rag.domain.services import PHIDetector, format_response_for_display
from clinical_rag.infrastructure.audit import AuditLogger
from clinical_rag.infrastructure.logging_config import setup_logging
from clinical_rag.infrastructure.settings import settings

app = typer.Typer(
    name="clinical-rag",
    help="Clinical-RAG: PHI-safe retrieval-augmented answers over clinical records",
    add_completion=False
)
console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"{settings.app_name} {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    version: Optional[bool] = typer.Option(
        None, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """Clinical-RAG command line."""
    setup_logging(
        use_json=settings.log_json,
        log_level="DEBUG" if verbose else settings.log_level,
    )


def _build_pipeline_cli():
    try:
        from clinical_rag.main import build_pipeline
        return build_pipeline()
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to initialize pipeline: {str(e)}")
        raise typer.Exit(code=1)


@app.command()
def ingest(
    input_file: Path = typer.Argument(..., help="FHIR JSON or NDJSON file", exists=True, dir_okay=False),
    owner: str = typer.Option(settings.default_owner, "--owner", "-o", help="Owner the records belong to"),
) -> None:
    """Anonymize, embed and store every resource of a file.

    Examples:
        clinical-rag ingest data/bundle.json --owner clinic-a
        clinical-rag ingest data/conditions.ndjson
    """
    from clinical_rag.main import process_ingestion

    console.print(f"\n[bold blue]{settings.app_name} Ingestion[/bold blue]")
    console.print(f"[dim]Input file:[/dim] {input_file}")
    console.print(f"[dim]Database path:[/dim] {settings.get_db_path()}")
    console.print()

    pipeline = _build_pipeline_cli()
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console
        ) as progress:
            task = progress.add_task("Processing records...", total=None)
            batch = process_ingestion(pipeline, str(input_file), owner)
            progress.update(task, completed=True)
    except PipelineError as e:
        console.print(f"\n[red]✗[/red] Ingestion failed: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        pipeline.close()

    total_count = batch.success_count + batch.failure_count
    console.print("\n[bold]Ingestion Summary:[/bold]")
    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Total processed:", f"[bold]{total_count:,}[/bold]")
    summary_table.add_row("Successful:", f"[green]{batch.success_count:,}[/green]")
    summary_table.add_row(
        "Failed:",
        f"[red]{batch.failure_count:,}[/red]" if batch.failure_count else f"{batch.failure_count:,}"
    )
    console.print(summary_table)

    if batch.errors:
        error_table = Table(title="Rejected entries")
        error_table.add_column("Item")
        error_table.add_column("Error type")
        error_table.add_column("Error")
        for error in batch.errors:
            error_table.add_row(error.item_id or "-", error.error_type, error.error)
        console.print(error_table)
        console.print(f"\n[yellow]⚠[/yellow] Ingestion completed with {batch.failure_count} failures")
        raise typer.Exit(code=1)

    console.print("\n[green]✓[/green] Ingestion completed successfully")


@app.command()
def query(
    text: str = typer.Argument(..., help="Clinical question"),
    owner: str = typer.Option(settings.default_owner, "--owner", "-o", help="Owner whose records are searched"),
) -> None:
    """Answer a clinical question from the owner's stored records."""
    from clinical_rag.main import process_query

    pipeline = _build_pipeline_cli()
    try:
        with console.status("[bold green]Retrieving context and generating response..."):
            outcome = process_query(pipeline, owner, text)
    finally:
        pipeline.close()

    if outcome.phi_in_query:
        console.print(
            "[yellow]⚠[/yellow] The query contained PHI; it was redacted before processing."
        )
    console.print(Markdown(format_response_for_display(outcome)))

    if outcome.failed:
        raise typer.Exit(code=1)


@app.command()
def scan(
    text: str = typer.Argument(..., help="Text to scan for PHI"),
) -> None:
    """Report PHI kinds and positions found in text (values are never shown)."""
    matches = PHIDetector().detect(text)
    if not matches:
        console.print("[green]✓[/green] No PHI detected")
        return

    table = Table(title=f"{len(matches)} PHI match(es)")
    table.add_column("Kind")
    table.add_column("Offset", justify="right")
    table.add_column("Length", justify="right")
    for match in matches:
        audit = match.to_audit_dict()
        table.add_row(audit["kind"], str(audit["offset"]), str(audit["length"]))
    console.print(table)
    raise typer.Exit(code=2)


@app.command("audit-report")
def audit_report(
    output_format: str = typer.Option("table", "--format", "-f", help="table, json or csv"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Maximum events to load"),
) -> None:
    """Summarize the persisted audit trail."""
    from clinical_rag.main import create_storage_adapter

    try:
        store = create_storage_adapter()
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to create storage adapter: {str(e)}")
        raise typer.Exit(code=1)

    try:
        events = store.load_audit_events(limit=limit)
    except PipelineError as e:
        console.print(f"[red]✗[/red] Failed to load audit events: {str(e)}")
        raise typer.Exit(code=1)
    finally:
        store.close()

    audit = AuditLogger()
    for event in events:
        audit.emit(event)

    if output_format in ("json", "csv"):
        console.print(audit.export(output_format), markup=False, highlight=False)
        return
    if output_format != "table":
        console.print(f"[red]✗[/red] Unsupported format: {output_format}")
        raise typer.Exit(code=1)

    report = audit.generate_audit_report()
    console.print(f"\n[bold]Audit Report[/bold] ({report['total_events']} events)")

    kind_table = Table(title="Events by kind")
    kind_table.add_column("Event")
    kind_table.add_column("Count", justify="right")
    for kind, count in sorted(report["events_by_kind"].items()):
        kind_table.add_row(kind, str(count))
    console.print(kind_table)

    severity_table = Table(title="Events by severity")
    severity_table.add_column("Severity")
    severity_table.add_column("Count", justify="right")
    for severity, count in sorted(report["events_by_severity"].items()):
        severity_table.add_row(severity, str(count))
    console.print(severity_table)

    owner_table = Table(title="Events by owner")
    owner_table.add_column("Owner")
    owner_table.add_column("Count", justify="right")
    for owner_id, count in sorted(report["events_by_owner"].items()):
        owner_table.add_row(owner_id, str(count))
    console.print(owner_table)

    console.print(f"Failures: [red]{report['failure_count']}[/red]")
    if report["security_events"]:
        console.print(f"\n[bold yellow]Security events ({len(report['security_events'])})[/bold yellow]")
        for event in report["security_events"]:
            console.print(json.dumps(event, sort_keys=True), markup=False, highlight=False)


@app.command()
def info() -> None:
    """Show configuration (secrets are never printed)."""
    ai_config = settings.ai_config
    retrieval = settings.retrieval_config

    table = Table(title=f"{settings.app_name} {__version__}", show_header=False)
    table.add_row("Database path", settings.get_db_path())
    table.add_row("Embedding model", f"{ai_config.embedding_model} ({ai_config.embedding_dimensions} dims)")
    table.add_row("Generation model", ai_config.generation_model)
    table.add_row("API key configured", "yes" if ai_config.api_key else "no")
    table.add_row("Top K", str(retrieval.top_k))
    table.add_row("Similarity threshold", str(retrieval.min_threshold))
    table.add_row("Confidence floor", str(retrieval.min_confidence))
    table.add_row(
        "Timeouts (embed/generate/store)",
        f"{retrieval.embedding_timeout}s / {retrieval.generation_timeout}s / {retrieval.storage_timeout}s"
    )
    console.print(table)


if __name__ == "__main__":
    app()
