"""Typer-based CLI for contentgate."""

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import PipelineConfig
from .corpus import CorpusStore
from .errors import PipelineError
from .exporter import REJECTIONS_FILE, BuildExporter
from .ledger import LedgerWriter, read_ledger, read_ledger_tail
from .models.content import ItemRef
from .models.ledger import LedgerAction
from .models.queue import WorkAction, WorkStatus
from .paths import WorkspacePaths
from .processor import ProcessorBot
from .quality_gate import QualityGate
from .scanner import Scanner
from .verifier import VerifierBot
from .work_queue import WorkQueue
from .workers import run_worker

app = typer.Typer(
    name="contentgate",
    help="contentgate - content quality gate and auto-remediation pipeline",
    add_completion=False,
)

console = Console()

WORKSPACE_HELP = "Path to workspace directory (default: CONTENTGATE_WORKSPACE_PATH env or ./contentgate_workspace)"


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    ),
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


class _Pipeline:
    """Stores and collaborators for one CLI invocation."""

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.paths = WorkspacePaths.from_config(config)
        self.gate = QualityGate.from_config(config)
        self.corpus = CorpusStore(self.paths.corpus_db)
        self.queue = WorkQueue(self.paths.queue_db, max_attempts=config.max_attempts)
        self.ledger = LedgerWriter(self.paths.ledger_file)


def _load_pipeline(workspace_path: Optional[str]) -> _Pipeline:
    try:
        config = PipelineConfig.from_env(cli_workspace_path=workspace_path, mode="use_existing")
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(code=1)
    except ValueError as e:
        console.print(f"[red]Error: invalid configuration: {e}[/red]")
        raise typer.Exit(code=1)
    try:
        return _Pipeline(config)
    except PipelineError as e:
        console.print(f"[red]Error opening workspace: {e}[/red]")
        raise typer.Exit(code=1)


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(code=1)


@app.command()
def init(
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Re-initialize even if workspace already exists",
    ),
):
    """Initialize a workspace with its directories, stores and system files.

    This command is idempotent - it will not overwrite existing data.
    """
    config = PipelineConfig.from_env(cli_workspace_path=workspace_path, mode="create_ok")
    workspace_root = config.workspace_path
    paths = WorkspacePaths.from_config(config)

    if workspace_root.exists() and not force:
        if paths.system.exists():
            console.print(f"[yellow]Workspace already exists at:[/yellow] {workspace_root}")
            console.print("[yellow]Running in idempotent mode - will only create missing items[/yellow]")
        else:
            console.print(f"[yellow]Directory exists but is not a workspace:[/yellow] {workspace_root}")
            console.print("[yellow]Initializing workspace structure...[/yellow]")
    else:
        console.print(f"[green]Initializing new contentgate workspace at:[/green] {workspace_root}")

    directories_created = []
    for directory in paths.get_all_directories():
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            directories_created.append(directory)

    if directories_created:
        console.print(f"[green]+[/green] Created {len(directories_created)} directories")
    else:
        console.print("[dim]All directories already exist[/dim]")

    if not paths.config_file.exists():
        paths.config_file.write_text(config.to_yaml_str())
        console.print(f"[green]+[/green] Created config: {paths.config_file}")
    else:
        console.print(f"[dim]Config already exists: {paths.config_file}[/dim]")

    if not paths.ledger_file.exists():
        paths.ledger_file.touch()
        console.print(f"[green]+[/green] Created ledger: {paths.ledger_file}")
    else:
        console.print(f"[dim]Ledger already exists: {paths.ledger_file}[/dim]")

    try:
        CorpusStore(paths.corpus_db)
        WorkQueue(paths.queue_db, max_attempts=config.max_attempts)
    except PipelineError as e:
        _fail(f"could not create stores: {e}")

    console.print()
    console.print("[bold green]Workspace initialization complete![/bold green]")
    console.print(f"[dim]Workspace location:[/dim] {workspace_root.absolute()}")


@app.command("import")
def import_bundle(
    bundle: Path = typer.Argument(..., help="Bundle JSON file or directory of channel files"),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Import content records from static JSON bundles into the regular corpus."""
    pipeline = _load_pipeline(workspace_path)

    if not bundle.exists():
        _fail(f"bundle not found: {bundle}")

    try:
        stored = pipeline.corpus.import_bundle(bundle, ledger=pipeline.ledger)
    except (ValueError, OSError) as e:
        _fail(f"could not read bundle {bundle}: {e}")
    except PipelineError as e:
        _fail(str(e))

    channels = sorted({record.channel_id for record in stored})
    console.print(f"[green]+[/green] Imported {len(stored)} record(s) into {len(channels)} channel(s)")
    for channel_id in channels:
        console.print(f"  [dim]-[/dim] {channel_id}")


@app.command()
def scan(
    channel: Optional[str] = typer.Option(None, "--channel", "-c", help="Only scan this channel"),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Validate the regular corpus and enqueue remediation work for invalid records."""
    pipeline = _load_pipeline(workspace_path)
    scanner = Scanner(pipeline.queue, pipeline.ledger, pipeline.gate)

    try:
        summary = scanner.scan(pipeline.corpus, channel_id=channel)
    except PipelineError as e:
        _fail(f"scan aborted: {e}")

    console.print(f"[bold]Scanned:[/bold] {summary.scanned}")
    console.print(f"[bold]Invalid:[/bold] {summary.invalid}")
    console.print(f"[green]Enqueued:[/green] {summary.enqueued}")
    if summary.duplicates:
        console.print(f"[dim]Already queued:[/dim] {summary.duplicates}")


@app.command()
def verify(
    max_items: Optional[int] = typer.Option(None, "--max-items", "-n", help="Stop after N items"),
    loop: bool = typer.Option(False, "--loop", help="Keep polling instead of exiting when idle"),
    poll_interval: float = typer.Option(1.0, "--poll-interval", help="Seconds between idle polls"),
    worker_id: Optional[str] = typer.Option(None, "--worker-id", help="Worker identity in the ledger"),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Annotate pending work items with diagnostic scores (read-only)."""
    pipeline = _load_pipeline(workspace_path)
    bot = VerifierBot(pipeline.corpus, pipeline.queue, pipeline.ledger, pipeline.gate, worker_id=worker_id)

    try:
        summary = run_worker(bot.verify_next, max_items=max_items, poll_interval=poll_interval, idle_exit=not loop)
    except PipelineError as e:
        _fail(f"verifier stopped: {e}")

    if not summary.results:
        console.print("[dim]No unannotated pending items[/dim]")
        return

    table = Table(title=f"Verified {summary.handled} Item(s)")
    table.add_column("Item", style="cyan", no_wrap=True)
    table.add_column("Record", style="yellow")
    table.add_column("Score", justify="right")
    table.add_column("Structure", justify="right")
    table.add_column("Issues", style="magenta")
    for verified in summary.results:
        table.add_row(
            verified.item_id[:8],
            verified.item_ref.key,
            f"{verified.score:.1f}",
            f"{verified.structural_confidence:.2f}",
            ", ".join(verified.issues) or "-",
        )
    console.print(table)


@app.command()
def process(
    max_items: Optional[int] = typer.Option(None, "--max-items", "-n", help="Stop after N items"),
    loop: bool = typer.Option(False, "--loop", help="Keep polling instead of exiting when idle"),
    poll_interval: float = typer.Option(1.0, "--poll-interval", help="Seconds between idle polls"),
    worker_id: Optional[str] = typer.Option(None, "--worker-id", help="Worker identity in the ledger"),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Claim fix_format items and apply repairs."""
    pipeline = _load_pipeline(workspace_path)
    bot = ProcessorBot(pipeline.corpus, pipeline.queue, pipeline.ledger, pipeline.gate, worker_id=worker_id)

    try:
        summary = run_worker(bot.process_next, max_items=max_items, poll_interval=poll_interval, idle_exit=not loop)
    except PipelineError as e:
        _fail(f"processor stopped: {e}")

    if not summary.results:
        console.print("[dim]No pending fix_format items[/dim]")
        return

    table = Table(title=f"Processed {summary.handled} Item(s)")
    table.add_column("Item", style="cyan", no_wrap=True)
    table.add_column("Record", style="yellow")
    table.add_column("Outcome")
    table.add_column("Action", style="magenta")
    table.add_column("Detail", style="dim")
    for result in summary.results:
        outcome_style = "green" if result.outcome.value == "done" else "red"
        detail = result.detail or ""
        if len(detail) > 60:
            detail = detail[:57] + "..."
        table.add_row(
            result.item_id[:8],
            result.item_ref.key,
            f"[{outcome_style}]{result.outcome.value}[/{outcome_style}]",
            result.action_taken,
            detail,
        )
    console.print(table)


@app.command()
def recover(
    threshold: Optional[int] = typer.Option(
        None,
        "--threshold",
        "-t",
        help="Claim age in seconds after which an item is stale (default: config stale_claim_seconds)",
    ),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Release work items stuck in-progress past the staleness threshold."""
    pipeline = _load_pipeline(workspace_path)
    threshold_seconds = threshold if threshold is not None else pipeline.config.stale_claim_seconds

    def audit(item, previous_holder):
        pipeline.ledger.append(
            "recovery-sweep",
            LedgerAction.STALE_CLAIM_RECOVERED,
            item_ref=item.item_ref,
            work_item_id=item.id,
            payload={"status": item.status.value, "attempts": item.attempts, "claimed_by": previous_holder},
        )

    try:
        recovered = pipeline.queue.recover_stale(threshold_seconds, on_recover=audit)
    except PipelineError as e:
        _fail(f"recovery sweep failed: {e}")

    if not recovered:
        console.print("[dim]No stale claims[/dim]")
        return
    for item in recovered:
        style = "red" if item.status == WorkStatus.FAILED else "yellow"
        console.print(f"[{style}]{item.status.value}[/{style}] {item.id} ({item.item_ref.key}, {item.attempts} attempt(s))")


@app.command()
def export(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output directory (default: workspace build dir)"),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Export gate-passing records into distributable bundles plus a rejection report."""
    pipeline = _load_pipeline(workspace_path)
    output_dir = output or pipeline.paths.build

    try:
        report = BuildExporter(pipeline.corpus, pipeline.gate, pipeline.ledger).export(output_dir)
    except OSError as e:
        _fail(f"could not write bundles to {output_dir}: {e}")
    except PipelineError as e:
        _fail(str(e))

    console.print(f"[green]+[/green] Exported {report.exported} question(s) in {len(report.channels)} channel(s)")
    console.print(f"[green]+[/green] Exported {report.structured_exported} structured test entr(ies)")
    if report.rejected:
        console.print(f"[yellow]Rejected {len(report.rejected)} record(s):[/yellow]")
        for rejection in report.rejected:
            issues = ", ".join(issue.value for issue in rejection.issues)
            console.print(f"  [dim]-[/dim] {rejection.item_ref} ({rejection.corpus}): {issues}")
    else:
        console.print("[dim]No records rejected[/dim]")
    console.print(f"[dim]Rejection report:[/dim] {Path(report.output_dir) / REJECTIONS_FILE}")


queue_app = typer.Typer(help="Work queue commands")
app.add_typer(queue_app, name="queue")


@queue_app.command("list")
def queue_list(
    status: Optional[WorkStatus] = typer.Option(WorkStatus.PENDING, "--status", "-s", help="Filter by status"),
    all_statuses: bool = typer.Option(False, "--all", help="Show items in every status"),
    action: Optional[WorkAction] = typer.Option(None, "--action", "-a", help="Filter by action"),
    record: Optional[str] = typer.Option(None, "--record", "-r", help="Filter by record (channel/id)"),
    limit: int = typer.Option(50, "--limit", help="Maximum items to display"),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """List work items in triage order (pending only by default)."""
    pipeline = _load_pipeline(workspace_path)

    item_ref = None
    if record:
        try:
            item_ref = ItemRef.from_key(record)
        except ValueError as e:
            _fail(str(e))

    items = pipeline.queue.list_items(
        status=None if all_statuses else status,
        action=action,
        item_ref=item_ref,
        limit=limit,
    )
    if not items:
        console.print("[dim]No matching work items[/dim]")
        return

    table = Table(title=f"{len(items)} Work Item(s)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Record", style="yellow")
    table.add_column("Action", style="magenta")
    table.add_column("Pri", justify="right")
    table.add_column("Status")
    table.add_column("Att", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Reason", style="dim")
    for item in items:
        reason = item.reason if len(item.reason) <= 60 else item.reason[:57] + "..."
        score = f"{item.annotation.score:.1f}" if item.annotation else "-"
        table.add_row(
            item.id,
            item.item_ref.key,
            item.action.value,
            str(item.priority),
            item.status.value,
            str(item.attempts),
            score,
            reason,
        )
    console.print(table)


@queue_app.command("stats")
def queue_stats(
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Show work item counts per status."""
    pipeline = _load_pipeline(workspace_path)
    stats = pipeline.queue.stats()

    table = Table(title="Work Queue")
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("pending", str(stats.pending))
    table.add_row("in-progress", str(stats.in_progress))
    table.add_row("done", str(stats.done))
    table.add_row("failed", str(stats.failed))
    table.add_row("[bold]total[/bold]", f"[bold]{stats.total}[/bold]")
    console.print(table)


@queue_app.command("requeue")
def queue_requeue(
    item_id: str = typer.Argument(..., help="ID of a done or failed work item"),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Re-enqueue a terminal item as a new pending item with fresh attempts."""
    pipeline = _load_pipeline(workspace_path)

    try:
        item = pipeline.queue.requeue(item_id)
    except PipelineError as e:
        _fail(str(e))

    try:
        pipeline.ledger.append(
            "operator",
            LedgerAction.ITEM_REQUEUED,
            item_ref=item.item_ref,
            work_item_id=item.id,
            payload={"requeued_from": item_id},
        )
    except PipelineError as e:
        pipeline.queue.discard_unclaimed(item.id)
        _fail(f"requeue not recorded: {e}")

    console.print(f"[green]+[/green] Requeued {item_id} as {item.id} ({item.item_ref.key})")


@queue_app.command("resolve")
def queue_resolve(
    item_id: str = typer.Argument(..., help="ID of a pending work item"),
    outcome: WorkStatus = typer.Option(WorkStatus.DONE, "--outcome", help="done or failed"),
    note: Optional[str] = typer.Option(None, "--note", help="Resolution note"),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Close a pending item after manual triage (e.g. a flag_manual_review item)."""
    if outcome not in (WorkStatus.DONE, WorkStatus.FAILED):
        _fail("--outcome must be done or failed")

    pipeline = _load_pipeline(workspace_path)

    try:
        item = pipeline.queue.claim(item_id, worker_id="operator")
    except PipelineError as e:
        _fail(str(e))
    if item is None:
        _fail(f"work item {item_id} is not pending")

    try:
        pipeline.ledger.append(
            "operator",
            LedgerAction.ITEM_COMPLETED if outcome == WorkStatus.DONE else LedgerAction.ITEM_FAILED,
            item_ref=item.item_ref,
            work_item_id=item.id,
            payload={"resolution": outcome.value, "note": note},
        )
    except PipelineError as e:
        pipeline.queue.release(item.id, worker_id="operator", note=f"resolution not recorded: {e}")
        _fail(f"resolution not recorded: {e}")

    try:
        pipeline.queue.complete(item.id, outcome, worker_id="operator", note=note or "resolved by operator")
    except PipelineError as e:
        _fail(str(e))

    console.print(f"[green]+[/green] Resolved {item_id} as {outcome.value}")


ledger_app = typer.Typer(help="Ledger commands")
app.add_typer(ledger_app, name="ledger")


@ledger_app.command("tail")
def ledger_tail(
    n: int = typer.Option(
        20,
        "--n",
        help="Number of recent entries to display",
    ),
    full: bool = typer.Option(
        False,
        "--full",
        help="Show full payloads and snapshots with JSON pretty-print",
    ),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Display the last N entries from the ledger.

    Skips malformed lines with warnings.
    """
    pipeline = _load_pipeline(workspace_path)

    try:
        entries = read_ledger_tail(pipeline.paths.ledger_file, n=n)
    except PipelineError as e:
        _fail(str(e))

    if not entries:
        console.print("[dim]No entries in ledger[/dim]")
        return

    if full:
        console.print(f"[bold]Last {len(entries)} Ledger Entr(ies)[/bold]\n")
        for i, entry in enumerate(entries, 1):
            console.print(f"[cyan]Entry {i}/{len(entries)}[/cyan]")
            console.print(f"  [dim]Entry ID:[/dim]   {entry.entry_id}")
            console.print(f"  [dim]Run ID:[/dim]     {entry.run_id}")
            console.print(f"  [dim]Timestamp:[/dim]  {entry.ts.strftime('%Y-%m-%d %H:%M:%S')} UTC")
            console.print(f"  [dim]Actor:[/dim]      {entry.actor}")
            console.print(f"  [dim]Action:[/dim]     [magenta]{entry.action.value}[/magenta]")
            console.print(f"  [dim]Record:[/dim]     {entry.item_ref or '-'}")
            console.print(f"  [dim]Work item:[/dim]  {entry.work_item_id or '-'}")
            body = {
                "payload": entry.payload,
                "before": entry.before_snapshot,
                "after": entry.after_snapshot,
            }
            for line in json.dumps(body, indent=2, ensure_ascii=False).split("\n"):
                console.print(f"    {line}", markup=False)
            console.print()
        return

    table = Table(title=f"Last {len(entries)} Ledger Entr(ies)")
    table.add_column("Timestamp (UTC)", style="cyan", no_wrap=True)
    table.add_column("Actor", style="green")
    table.add_column("Action", style="magenta")
    table.add_column("Record", style="yellow")
    table.add_column("Payload", style="dim")

    for entry in entries:
        payload_str = str(entry.payload)
        if len(payload_str) > 60:
            payload_str = payload_str[:57] + "..."
        table.add_row(
            entry.ts.strftime("%Y-%m-%d %H:%M:%S"),
            entry.actor,
            entry.action.value,
            entry.item_ref or "-",
            payload_str,
        )

    console.print(table)


@ledger_app.command("export")
def ledger_export(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write JSONL here instead of stdout"),
    workspace_path: str = typer.Option(None, "--workspace", "-w", help=WORKSPACE_HELP),
):
    """Export every ledger entry as JSONL in (timestamp, id) order."""
    pipeline = _load_pipeline(workspace_path)

    try:
        entries = read_ledger(pipeline.paths.ledger_file)
    except PipelineError as e:
        _fail(str(e))

    lines = [entry.model_dump_json() for entry in entries]
    if output is None:
        for line in lines:
            typer.echo(line)
        return

    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
    console.print(f"[green]+[/green] Exported {len(lines)} ledger entr(ies) to {output}")


@app.command()
def version():
    """Show contentgate version."""
    from . import __version__
    console.print(f"contentgate v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
