# /auditvault/app.py
"""
Interactive command-line front end for the ingestion pipeline.
Uploads local files, imports from Google Drive and manages file versions
against the configured catalog and blob store.
"""
import mimetypes
import sys
from pathlib import Path

# Rich UI Components
from rich.panel import Panel
from rich.prompt import Confirm, IntPrompt, Prompt
from rich.table import Table

from .config import MAX_FILES_PER_DOC, console
from .drive_import import ImportRequest
from .errors import IngestError
from .local_upload import CandidateFile
from .observability import get_logger
from .runtime import Actor, Services, build_runtime

logger = get_logger(__name__)


# --- UI & Formatting Functions ---

def display_welcome_banner(services: Services):
    """Displays the application's welcome banner."""
    console.print(Panel(
        "[bold magenta]AuditVault - Document Ingestion CLI[/bold magenta]",
        subtitle=f"[cyan]Upload chain: {' -> '.join(services.chain.strategy_names)}[/cyan]",
        expand=False
    ))
    if not services.engine.capability.enabled:
        console.print(f"[yellow]Versioning unavailable: {services.engine.capability.degraded_reason}[/yellow]")


def _read_candidates(raw_paths: str) -> list[CandidateFile]:
    candidates = []
    for raw in raw_paths.split(","):
        raw = raw.strip().strip('"').strip("'")
        if not raw:
            continue
        path = Path(raw).expanduser()
        if not path.is_file():
            console.print(f"[bold red]Not a regular file: '{path}'[/bold red]")
            continue
        content_type, _ = mimetypes.guess_type(path.name)
        candidates.append(CandidateFile(name=path.name, data=path.read_bytes(), content_type=content_type or ""))
    return candidates


def handle_local_upload(services: Services):
    """CLI flow for uploading local files into a document."""
    document_id = Prompt.ask("Document id")
    raw_paths = Prompt.ask(f"File paths (comma separated, max {MAX_FILES_PER_DOC} per document)")
    candidates = _read_candidates(raw_paths)
    if not candidates:
        console.print("[bold red]No readable files selected.[/bold red]")
        return

    def _progress(completed: int, total: int):
        console.print(f"[dim]uploaded {completed}/{total}[/dim]")

    result = services.uploader.upload_batch(document_id, candidates, services.actor.user_id, on_progress=_progress)
    colour = {"all_succeeded": "green", "partial": "yellow", "all_failed": "red"}[result.outcome.value]
    console.print(f"[bold {colour}]{result.outcome.value}: {result.succeeded} uploaded, {result.failed} failed[/bold {colour}]")
    for failure in result.failures:
        console.print(f"  - {failure.name}: {failure.reason}")


def handle_drive_import(services: Services):
    """CLI flow for a Google Drive file or folder import."""
    if services.importer is None:
        console.print("[bold red]GOOGLE_API_KEY is not configured.[/bold red]")
        return
    source_url = Prompt.ask("Google Drive link or id")
    section_id = Prompt.ask("Target section id")
    import_type = Prompt.ask("Import type", choices=["auto", "file", "folder"], default="auto")
    create_subfolder = Confirm.ask("Create a subfolder for this import?", default=False)
    subfolder_name = Prompt.ask("Subfolder name") if create_subfolder else ""
    target_document_id = "" if create_subfolder else Prompt.ask("Existing document id (optional)", default="")

    with console.status("[bold cyan]Importing from Google Drive...[/bold cyan]", spinner="dots"):
        result = services.importer.run(
            ImportRequest(
                source_url=source_url,
                section_id=section_id,
                import_type="" if import_type == "auto" else import_type,
                target_document_id=target_document_id,
                create_subfolder=create_subfolder,
                subfolder_name=subfolder_name,
            ),
            services.actor.user_id,
        )
    if not result.ok:
        console.print(f"[bold red]Import failed ({result.error_kind}): {result.error}[/bold red]")
    else:
        console.print(
            f"[green]run {result.run_id}: scanned={result.scanned} imported={result.imported} skipped={result.skipped}[/green]"
        )
        for item in result.skipped_samples:
            console.print(f"  - {item.name or item.id}: {item.reason}")
    if Confirm.ask("Show trace?", default=False):
        console.print("\n".join(result.trace))


def handle_list_files(services: Services):
    document_id = Prompt.ask("Document id")
    files = services.files.store.list_files(document_id)
    if not files:
        console.print("[yellow]No files in this document.[/yellow]")
        return
    table = Table(title=f"Files of {document_id}")
    for column in ("id", "name", "type", "size", "uploaded"):
        table.add_column(column)
    for record in files:
        table.add_row(record.id, record.file_name, record.file_type, str(record.file_size), record.created_at)
    console.print(table)


def handle_list_versions(services: Services):
    file_id = Prompt.ask("File id")
    versions = services.files.list_versions(file_id)
    if not versions:
        console.print("[yellow]No versions recorded.[/yellow]")
        return
    table = Table(title=f"Versions of {file_id}")
    for column in ("version", "reason", "size", "created"):
        table.add_column(column)
    for version in versions:
        table.add_row(str(version.version_number), version.reason, str(version.file_size), version.created_at)
    console.print(table)


def handle_rollback(services: Services):
    file_id = Prompt.ask("File id")
    version_number = IntPrompt.ask("Restore version number")
    result = services.files.rollback(file_id, version_number, services.actor.user_id)
    console.print(f"[green]Restored v{result.restored_version} via {result.strategy_used}.[/green]")
    for warning in result.warnings:
        console.print(f"[yellow]{warning}[/yellow]")


def handle_delete(services: Services):
    file_id = Prompt.ask("File id")
    if not Confirm.ask(f"Delete file {file_id}?", default=False):
        return
    result = services.files.delete_file(file_id, services.actor.user_id)
    console.print(f"[green]Deleted {result.file_id}.[/green]")
    if result.snapshot.warning:
        console.print(f"[yellow]{result.snapshot.warning}[/yellow]")
    if result.storage_error:
        console.print(f"[yellow]storage: {result.storage_error}[/yellow]")
    for warning in result.cleanup_warnings:
        console.print(f"[yellow]{warning}[/yellow]")


def main():
    """Main application loop."""
    runtime = build_runtime()
    actor_id = Prompt.ask("Acting user id (optional)", default="")
    services = runtime.services(Actor(user_id=actor_id or None))
    display_welcome_banner(services)

    handlers = {
        "1": handle_local_upload,
        "2": handle_drive_import,
        "3": handle_list_files,
        "4": handle_list_versions,
        "5": handle_rollback,
        "6": handle_delete,
    }
    try:
        while True:
            try:
                console.print("\n[bold]Main Menu:[/bold]")
                console.print("[green]1. Upload Local File(s)[/green]")
                console.print("[green]2. Import From Google Drive[/green]")
                console.print("[cyan]3. List Document Files[/cyan]")
                console.print("[cyan]4. List File Versions[/cyan]")
                console.print("[blue]5. Roll Back File[/blue]")
                console.print("[red]6. Delete File[/red]")
                console.print("[red]7. Exit[/red]")

                choice = Prompt.ask("Choose an option", choices=["1", "2", "3", "4", "5", "6", "7"])
                if choice == "7":
                    break
                handlers[choice](services)
            except IngestError as exc:
                logger.warning("cli_operation_failed", error=str(exc))
                console.print(f"[bold red]{type(exc).__name__}: {exc}[/bold red]")
            except ValueError as exc:
                console.print(f"[bold red]Invalid input: {exc}[/bold red]")
            except KeyboardInterrupt:
                break
    finally:
        runtime.close()

    console.print("\n[bold magenta]Goodbye![/bold magenta]")
    sys.exit(0)

if __name__ == "__main__":
    main()
