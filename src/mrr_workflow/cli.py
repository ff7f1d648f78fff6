import logging
from contextlib import contextmanager
from datetime import date
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.table import Table
from typing_extensions import Annotated

from .config import AppConfig, ConfigError
from .api_client import ApiClient
from .errors import ValidationError, WorkflowError
from .inventory import stock_tier
from .issues import IssueSubmitter
from .models import (
    BatchIssueResult,
    IssueForm,
    IssueHeader,
    IssueRow,
    MrrStatus,
    ReturnCondition,
    StockTier,
)
from .permissions import Authorizer, RoleAuthorizer
from .transfers import MaterialReturnRequest, SiteTransferRequest, TransferOutcome, TransferService
from .workflow import MrrWorkflow

logger = logging.getLogger(__name__)

app = typer.Typer(help="Material Requirement Request workflow CLI")
console = Console()

# Exit code for a batch where some lines were created and some were not
PARTIAL_FAILURE_EXIT_CODE = 2

TIER_STYLES = {StockTier.CRITICAL: "bold red", StockTier.LOW: "yellow", StockTier.OK: "green"}


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging.")] = False,
):
    """
    Manage Material Requirement Requests, inventory checks and material issues.
    """
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug logging enabled")


def _setup() -> Tuple[AppConfig, ApiClient, Optional[Authorizer]]:
    config = AppConfig.load()
    api_client = ApiClient(url=config.api_url, token=config.api_token, timeout=config.timeout)
    authorizer = RoleAuthorizer(config.user_role) if config.user_role else None
    return config, api_client, authorizer


@contextmanager
def _handle_errors():
    try:
        yield
    except ConfigError as e:
        console.print(f"[bold red]Configuration Error:[/bold red] {e}")
        raise typer.Exit(code=1)
    except ValidationError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        for field_error in e.errors:
            console.print(f"  - {field_error}")
        raise typer.Exit(code=1)
    except WorkflowError as e:
        console.print(f"[bold red]Error:[/bold red] {e.message}")
        raise typer.Exit(code=1)


def parse_issue_lines(lines: List[str]) -> List[IssueRow]:
    """Parses 'MATERIAL_ID:QUANTITY[:WAREHOUSE_ID]' strings into issue form rows."""
    rows: List[IssueRow] = []
    for line in lines:
        parts = line.split(":")
        if len(parts) not in (2, 3):
            console.print(f"[bold red]Error:[/bold red] Invalid line '{line}'. Expected format: MATERIAL_ID:QUANTITY[:WAREHOUSE_ID]")
            raise typer.Exit(code=1)
        try:
            material_id = int(parts[0])
            quantity = float(parts[1])
            warehouse_id = int(parts[2]) if len(parts) == 3 and parts[2] else None
        except ValueError:
            console.print(f"[bold red]Error:[/bold red] Invalid numbers in line '{line}'.")
            raise typer.Exit(code=1)
        rows.append(IssueRow(material_id=material_id, quantity=quantity, warehouse_id=warehouse_id))
    return rows


def _fmt_qty(value: Optional[float]) -> str:
    return f"{value:.2f}" if value is not None else "-"


@app.command("list")
def list_mrrs(
    status: Annotated[Optional[MrrStatus], typer.Option("--status", help="Only show MRRs in this status.")] = None,
    project_id: Annotated[Optional[int], typer.Option("--project", help="Only show MRRs of this project.")] = None,
    search: Annotated[Optional[str], typer.Option("--search", help="Free-text search.")] = None,
):
    """
    Lists Material Requirement Requests.
    """
    with _handle_errors():
        _, api_client, authorizer = _setup()
        workflow = MrrWorkflow(api_client, authorizer)
        mrrs = workflow.reload(status=status, project_id=project_id, search=search)

        if not mrrs:
            console.print("[yellow]No MRRs found.[/yellow]")
            return

        table = Table(title="Material Requirement Requests", show_header=True, header_style="bold magenta")
        table.add_column("ID", justify="right")
        table.add_column("Number")
        table.add_column("Project", style="dim", width=25)
        table.add_column("Status")
        table.add_column("Priority")
        table.add_column("Required By")
        table.add_column("Items", justify="right")
        table.add_column("Est. Cost", justify="right")
        for mrr in mrrs:
            table.add_row(
                str(mrr.mrr_id),
                mrr.mrr_number or "-",
                mrr.project_name,
                mrr.status.value,
                mrr.priority.value,
                mrr.required_date.isoformat() if mrr.required_date else "-",
                str(len(mrr.items)),
                f"{mrr.total_estimated_cost:.2f}",
            )
        console.print(table)


@app.command()
def show(
    mrr_id: Annotated[int, typer.Argument(help="MRR id")],
):
    """
    Shows one MRR with its items and the actions currently available.
    """
    with _handle_errors():
        _, api_client, authorizer = _setup()
        workflow = MrrWorkflow(api_client, authorizer)
        mrr = workflow.get(mrr_id)

        console.print(f"[bold blue]{mrr.mrr_number or f'MRR {mrr.mrr_id}'}[/bold blue] - {mrr.project_name}")
        console.print(f"Status: {mrr.status.value}   Priority: {mrr.priority.value}")
        if mrr.rejection_reason:
            console.print(f"Rejection reason: {mrr.rejection_reason}")

        table = Table(title="Items", show_header=True, header_style="bold cyan")
        table.add_column("Line", justify="right")
        table.add_column("Item", width=30)
        table.add_column("Quantity", justify="right")
        table.add_column("Unit")
        table.add_column("Cost/Unit", justify="right")
        table.add_column("Total", justify="right")
        for item in mrr.items:
            table.add_row(
                str(item.mrr_item_id or "-"),
                item.display_name,
                _fmt_qty(item.quantity_requested),
                item.unit.unit_name if item.unit else "",
                _fmt_qty(item.estimated_cost_per_unit),
                f"{item.total_estimated_cost:.2f}",
            )
        console.print(table)
        console.print(f"Total estimated cost: [bold]{mrr.total_estimated_cost:.2f}[/bold]")

        actions = [a.value for a in workflow.admissible_actions(mrr)]
        console.print(f"Available actions: {', '.join(actions) if actions else 'none'}")


@app.command()
def submit(
    mrr_id: Annotated[int, typer.Argument(help="MRR id")],
    note: Annotated[Optional[str], typer.Option("--note", help="Note kept with the transition.")] = None,
):
    """
    Submits a draft MRR for approval.
    """
    with _handle_errors():
        _, api_client, authorizer = _setup()
        mrr = MrrWorkflow(api_client, authorizer).submit(mrr_id, note)
        console.print(f"[green]MRR {mrr.mrr_number or mrr_id} is now {mrr.status.value}.[/green]")


@app.command()
def approve(
    mrr_id: Annotated[int, typer.Argument(help="MRR id")],
    note: Annotated[Optional[str], typer.Option("--note", help="Note kept with the transition.")] = None,
):
    """
    Approves a submitted MRR.
    """
    with _handle_errors():
        _, api_client, authorizer = _setup()
        mrr = MrrWorkflow(api_client, authorizer).approve(mrr_id, note)
        console.print(f"[green]MRR {mrr.mrr_number or mrr_id} is now {mrr.status.value}.[/green]")


@app.command()
def reject(
    mrr_id: Annotated[int, typer.Argument(help="MRR id")],
    reason: Annotated[Optional[str], typer.Option("--reason", help="Reason given to the requester.")] = None,
):
    """
    Rejects a submitted MRR.
    """
    with _handle_errors():
        _, api_client, authorizer = _setup()
        mrr = MrrWorkflow(api_client, authorizer).reject(mrr_id, reason)
        console.print(f"[yellow]MRR {mrr.mrr_number or mrr_id} is now {mrr.status.value}.[/yellow]")


@app.command()
def process(
    mrr_id: Annotated[int, typer.Argument(help="MRR id")],
    note: Annotated[Optional[str], typer.Option("--note", help="Note kept with the transition.")] = None,
):
    """
    Marks an approved MRR as processing once its inventory check is READY_FOR_ISSUE.
    """
    with _handle_errors():
        _, api_client, authorizer = _setup()
        workflow = MrrWorkflow(api_client, authorizer)
        report = workflow.refresh_inventory(mrr_id)
        if report.mrr_status == MrrStatus.PROCESSING:
            console.print(f"[green]MRR {mrr_id} was moved to PROCESSING by the inventory check.[/green]")
            return
        mrr = workflow.mark_processing(mrr_id, note)
        console.print(f"[green]MRR {mrr.mrr_number or mrr_id} is now {mrr.status.value}.[/green]")


@app.command("set-status")
def set_status(
    mrr_id: Annotated[int, typer.Argument(help="MRR id")],
    status: Annotated[MrrStatus, typer.Argument(help="Status to force.")],
    note: Annotated[str, typer.Option("--note", help="Mandatory audit note.")] = "",
):
    """
    Forces an MRR into any status (administrative override, requires a note).
    """
    with _handle_errors():
        _, api_client, authorizer = _setup()
        mrr = MrrWorkflow(api_client, authorizer).force_status(mrr_id, status, note)
        console.print(f"[bold yellow]MRR {mrr.mrr_number or mrr_id} forced to {mrr.status.value}.[/bold yellow]")


@app.command()
def check(
    mrr_id: Annotated[int, typer.Argument(help="MRR id")],
    auto_create: Annotated[bool, typer.Option("--auto-create", help="Create zero-stock materials for unknown items.")] = False,
):
    """
    Checks an MRR's items against inventory.
    """
    with _handle_errors():
        _, api_client, authorizer = _setup()
        workflow = MrrWorkflow(api_client, authorizer)
        report = workflow.check_inventory(mrr_id, auto_create_materials=auto_create)

        table = Table(title=f"Inventory check for MRR {mrr_id}", show_header=True, header_style="bold magenta")
        table.add_column("Item", width=30)
        table.add_column("Required", justify="right")
        table.add_column("Available", justify="right")
        table.add_column("Status")
        table.add_column("Warehouse", style="dim")
        for line in report.lines:
            table.add_row(
                line.item_name or str(line.item_id),
                _fmt_qty(line.required_quantity),
                _fmt_qty(line.available_stock),
                line.status.value,
                line.warehouse.warehouse_name if line.warehouse else "",
            )
        console.print(table)

        summary = report.summary
        console.print(
            f"Total: {summary.total_items}  Available: {summary.available_items}  "
            f"Insufficient: {summary.insufficient_stock_items}  Not in inventory: {summary.not_in_inventory_items}  "
            f"Created: {summary.created_items}"
        )
        status = getattr(report.inventory_status, "value", report.inventory_status)
        style = "green" if report.is_ready else "yellow"
        console.print(f"Inventory status: [{style}]{status}[/{style}]   MRR status: {report.mrr_status.value}")
        if not report.consistent:
            console.print("[yellow]Warning:[/yellow] server figures differ from the locally derived ones; see log.")


def _print_outcomes(result: BatchIssueResult) -> None:
    table = Table(title="Material Issue Results", show_header=True, header_style="bold cyan")
    table.add_column("Row", justify="right")
    table.add_column("Material", justify="right")
    table.add_column("Item", width=25)
    table.add_column("Quantity", justify="right")
    table.add_column("Result")
    for outcome in result.outcomes:
        line = outcome.line
        if outcome.ok:
            status = f"[green]issued #{outcome.issue_id}[/green]" if outcome.issue_id else "[green]issued[/green]"
        else:
            status = f"[red]failed: {outcome.reason}[/red]"
        table.add_row(str(line.row or "-"), str(line.material_id), line.item_name, _fmt_qty(line.quantity), status)
    console.print(table)


@app.command()
def issue(
    mrr_id: Annotated[Optional[int], typer.Option("--mrr", help="Issue against this MRR (rows pre-filled from its inventory check).")] = None,
    project_id: Annotated[Optional[int], typer.Option("--project", help="Project for a non-MRR issue.")] = None,
    lines: Annotated[Optional[List[str]], typer.Option("--line", help="MATERIAL_ID:QUANTITY[:WAREHOUSE_ID], repeatable.")] = None,
    purpose: Annotated[str, typer.Option("--purpose", help="Purpose recorded on every issue.")] = "",
    received_by: Annotated[Optional[int], typer.Option("--received-by", help="User id of the receiver.")] = None,
    retries: Annotated[int, typer.Option("--retries", help="Times to resubmit failed lines.")] = 0,
):
    """
    Issues material to a project, one record per line, and reports each line's result.
    """
    with _handle_errors():
        config, api_client, authorizer = _setup()
        rows = parse_issue_lines(lines or [])

        if mrr_id is not None:
            workflow = MrrWorkflow(api_client, authorizer)
            form = workflow.issue_form(mrr_id, issued_by_user_id=config.user_id, purpose=purpose)
            if rows:
                form.rows = rows
        else:
            header = IssueHeader(
                project_id=project_id or 0,
                purpose=purpose,
                issued_by_user_id=config.user_id,
                received_by_user_id=config.user_id,
                is_mrr_based=False,
            )
            form = IssueForm(header=header, rows=rows)
        if received_by is not None:
            form.header.received_by_user_id = received_by

        submitter = IssueSubmitter(
            api_client,
            location=config.issue_location,
            max_workers=config.max_parallel_issues,
            authorizer=authorizer,
        )
        result = submitter.submit(form)
        for _ in range(max(0, retries)):
            if result.all_succeeded:
                break
            result = submitter.retry_failed(result)

        _print_outcomes(result)
        if result.all_succeeded:
            form.reset()
            console.print(f"[green]All {len(result.outcomes)} line(s) issued.[/green]")
            return
        console.print(
            f"[bold red]{len(result.failed)} of {len(result.outcomes)} line(s) failed.[/bold red] "
            "Successful lines were kept; rerun with only the failed lines."
        )
        raise typer.Exit(code=PARTIAL_FAILURE_EXIT_CODE)


@app.command()
def issues(
    project_id: Annotated[Optional[int], typer.Option("--project", help="Only issues of this project.")] = None,
    mrr_id: Annotated[Optional[int], typer.Option("--mrr", help="Only issues against this MRR.")] = None,
):
    """
    Lists material issue records.
    """
    with _handle_errors():
        _, api_client, _ = _setup()
        records = api_client.list_material_issues(project_id=project_id, mrr_id=mrr_id, all_pages=True)
        if not records:
            console.print("[yellow]No material issues found.[/yellow]")
            return

        table = Table(title="Material Issues", show_header=True, header_style="bold magenta")
        table.add_column("ID", justify="right")
        table.add_column("Date")
        table.add_column("Project", style="dim")
        table.add_column("Material", width=25)
        table.add_column("Quantity", justify="right")
        table.add_column("Warehouse", style="dim")
        table.add_column("Status")
        for record in records:
            table.add_row(
                str(record.issue_id or "-"),
                record.issue_date.isoformat() if record.issue_date else "-",
                record.project.name if record.project else str(record.project_id or "-"),
                record.material.name if record.material and record.material.name else str(record.resolved_material_id),
                _fmt_qty(record.quantity_issued),
                record.warehouse.warehouse_name if record.warehouse else "",
                record.status.value,
            )
        console.print(table)


@app.command("low-stock")
def low_stock(
    project_id: Annotated[Optional[int], typer.Option("--project", help="Only materials of this project.")] = None,
):
    """
    Lists materials at or below their reorder point or minimum stock level.
    """
    with _handle_errors():
        _, api_client, _ = _setup()
        materials = [m for m in api_client.list_low_stock(project_id=project_id) if stock_tier(m) != StockTier.OK]
        if not materials:
            console.print("[green]No materials are low on stock.[/green]")
            return

        table = Table(title="Low Stock Materials", show_header=True, header_style="bold red")
        table.add_column("ID", justify="right")
        table.add_column("Material", width=30)
        table.add_column("Warehouse", style="dim")
        table.add_column("In Stock", justify="right")
        table.add_column("Minimum", justify="right")
        table.add_column("Reorder At", justify="right")
        table.add_column("Tier")
        tier_order = {StockTier.CRITICAL: 0, StockTier.LOW: 1}
        for material in sorted(materials, key=lambda m: (tier_order[stock_tier(m)], m.name)):
            tier = stock_tier(material)
            style = TIER_STYLES[tier]
            table.add_row(
                str(material.material_id),
                material.name,
                material.warehouse_name,
                _fmt_qty(material.stock_qty),
                _fmt_qty(material.minimum_stock_level),
                _fmt_qty(material.reorder_point),
                f"[{style}]{tier.value}[/{style}]",
            )
        console.print(table)


def _print_transfer_outcome(outcome: TransferOutcome, label: str) -> None:
    if outcome.ok:
        console.print(f"[green]{label} recorded.[/green]")
        return
    console.print(f"[bold red]Error:[/bold red] {label} rejected: {outcome.reason}")
    raise typer.Exit(code=1)


@app.command()
def transfer(
    material_id: Annotated[int, typer.Argument(help="Material id")],
    quantity: Annotated[float, typer.Argument(help="Quantity to move")],
    from_project: Annotated[int, typer.Option("--from", help="Source project id.")],
    to_project: Annotated[int, typer.Option("--to", help="Destination project id.")],
    reason: Annotated[str, typer.Option("--reason", help="Transfer reason.")] = "",
):
    """
    Moves issued material from one project site to another.
    """
    with _handle_errors():
        config, api_client, authorizer = _setup()
        request = SiteTransferRequest(
            from_project_id=from_project,
            to_project_id=to_project,
            material_id=material_id,
            quantity=quantity,
            transfer_date=date.today(),
            reason=reason,
            requested_by_user_id=config.user_id,
        )
        _print_transfer_outcome(TransferService(api_client, authorizer).transfer(request), "Site transfer")


@app.command("return")
def return_material(
    material_id: Annotated[int, typer.Argument(help="Material id")],
    quantity: Annotated[float, typer.Argument(help="Quantity returned")],
    project_id: Annotated[int, typer.Option("--project", help="Project returning the material.")],
    condition: Annotated[ReturnCondition, typer.Option("--condition", help="Condition of the returned material.")] = ReturnCondition.GOOD,
    returned_by: Annotated[Optional[int], typer.Option("--returned-by", help="User id returning the material.")] = None,
    reason: Annotated[str, typer.Option("--reason", help="Return reason.")] = "",
):
    """
    Returns issued material from a project to stock.
    """
    with _handle_errors():
        config, api_client, authorizer = _setup()
        request = MaterialReturnRequest(
            project_id=project_id,
            material_id=material_id,
            quantity=quantity,
            condition=condition,
            returned_by_user_id=returned_by if returned_by is not None else config.user_id,
            reason=reason,
        )
        _print_transfer_outcome(TransferService(api_client, authorizer).return_material(request), "Material return")
