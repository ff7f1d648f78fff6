# Module: src/mrr_workflow/inventory.py
# Description: Line classification, rollup and the client-side projection of inventory check results.

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from .errors import WorkflowError
from .models import (
    ISSUABLE_MRR_STATUSES,
    InventoryCheckSummary,
    InventoryRollup,
    IssueForm,
    IssueHeader,
    IssueRow,
    LineStatus,
    MrrStatus,
    StockTier,
    WarehouseStock,
)
from .schemas import InventoryCheckResponse, InventoryCheckResult, Material, MaterialRequirementRequest

logger = logging.getLogger(__name__)

# Lines that had no material record before the check ran
_MISSING_STATUSES = (LineStatus.NOT_IN_INVENTORY, LineStatus.CREATED_NO_STOCK)


def classify_line(required: float, available: float, exists: bool, created: bool = False) -> LineStatus:
    """
    Classifies one MRR line against inventory.

    A record created by the check itself always has zero stock and is never
    AVAILABLE. An existing record with no stock is INSUFFICIENT_STOCK.
    """
    if created:
        return LineStatus.CREATED_NO_STOCK
    if not exists:
        return LineStatus.NOT_IN_INVENTORY
    if (available or 0.0) >= (required or 0.0):
        return LineStatus.AVAILABLE
    return LineStatus.INSUFFICIENT_STOCK


def rollup(statuses: Iterable[LineStatus]) -> InventoryRollup:
    """Derives the whole-MRR inventory status. NEEDS_PURCHASE wins over INSUFFICIENT_STOCK."""
    statuses = [LineStatus(s) for s in statuses]
    if all(s == LineStatus.AVAILABLE for s in statuses):
        return InventoryRollup.READY_FOR_ISSUE
    if any(s in _MISSING_STATUSES for s in statuses):
        return InventoryRollup.NEEDS_PURCHASE
    return InventoryRollup.INSUFFICIENT_STOCK


def summarize(statuses: Iterable[LineStatus]) -> InventoryCheckSummary:
    summary = InventoryCheckSummary()
    for status in statuses:
        status = LineStatus(status)
        summary.total_items += 1
        if status == LineStatus.AVAILABLE:
            summary.available_items += 1
        elif status == LineStatus.INSUFFICIENT_STOCK:
            summary.insufficient_stock_items += 1
        elif status == LineStatus.NOT_IN_INVENTORY:
            summary.not_in_inventory_items += 1
        elif status == LineStatus.CREATED_NO_STOCK:
            summary.created_items += 1
    return summary


def stock_tier(material: Material) -> StockTier:
    """Low-stock classification shared by every inventory listing."""
    if material.minimum_stock_level > 0 and material.stock_qty <= material.minimum_stock_level:
        return StockTier.CRITICAL
    if material.reorder_point > 0 and material.stock_qty <= material.reorder_point:
        return StockTier.LOW
    return StockTier.OK


@dataclass
class InventoryReport:
    """An inventory check as seen by the client, with re-derived figures alongside the server's."""
    mrr_id: int
    mrr_status: MrrStatus
    inventory_status: Union[InventoryRollup, str]
    lines: List[InventoryCheckResult] = field(default_factory=list)
    summary: InventoryCheckSummary = field(default_factory=InventoryCheckSummary)
    derived_status: Optional[InventoryRollup] = None
    derived_summary: Optional[InventoryCheckSummary] = None
    materials_created: int = 0
    message: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.inventory_status == InventoryRollup.READY_FOR_ISSUE

    @property
    def consistent(self) -> bool:
        return self.inventory_status == self.derived_status and self.summary == self.derived_summary

    def issuable_lines(self) -> List[InventoryCheckResult]:
        """Lines that can be issued right now: a material exists and has stock."""
        return [
            line for line in self.lines
            if line.material_id is not None
            and line.status != LineStatus.CREATED_NO_STOCK
            and line.available_stock > 0
        ]

    def item_ids(self) -> List[int]:
        return sorted({line.item_id for line in self.lines if line.item_id is not None})


def _rederive(line: InventoryCheckResult) -> LineStatus:
    return classify_line(
        line.required_quantity,
        line.available_stock,
        exists=line.material_exists,
        created=(line.status == LineStatus.CREATED_NO_STOCK),
    )


def parse_check_response(response: InventoryCheckResponse) -> InventoryReport:
    """
    Builds an InventoryReport from the resolver's response.

    Classification, summary and rollup are derived again on the client. Any
    disagreement is logged; the server's figures stay authoritative.
    """
    derived_lines = []
    for line in response.inventory_check_results:
        derived = _rederive(line)
        if derived != line.status:
            logger.warning(
                f"MRR {response.mrr_id}: line '{line.item_name or line.item_id}' classified "
                f"{line.status.value} by server but {derived.value} locally"
            )
        derived_lines.append(derived)

    derived_summary = summarize(derived_lines)
    derived_status = rollup(derived_lines)
    summary = response.summary or summarize(line.status for line in response.inventory_check_results)

    try:
        server_status: Union[InventoryRollup, str] = InventoryRollup(response.inventory_status)
    except ValueError:
        logger.warning(f"MRR {response.mrr_id}: unrecognised inventory status '{response.inventory_status}'")
        server_status = response.inventory_status

    if server_status != derived_status:
        logger.warning(
            f"MRR {response.mrr_id}: server rollup {getattr(server_status, 'value', server_status)} "
            f"differs from derived {derived_status.value}"
        )
    if summary != derived_summary:
        logger.warning(f"MRR {response.mrr_id}: server summary {summary} differs from derived {derived_summary}")

    return InventoryReport(
        mrr_id=response.mrr_id,
        mrr_status=response.mrr_status,
        inventory_status=server_status,
        lines=list(response.inventory_check_results),
        summary=summary,
        derived_status=derived_status,
        derived_summary=derived_summary,
        materials_created=response.materials_created,
        message=response.message,
    )


class InventoryProjection:
    """
    Client-side view of inventory: the last check per MRR and a material cache.

    The cache is refreshed by item id after each check rather than reloaded wholesale.
    """

    def __init__(self, api_client, project_id: Optional[int] = None):
        self.api_client = api_client
        self.project_id = project_id
        self.reports: Dict[int, InventoryReport] = {}
        self.materials: Dict[int, Material] = {}

    def check(self, mrr_id: int, auto_create_materials: bool = False) -> InventoryReport:
        logger.info(f"Checking inventory for MRR {mrr_id} (auto_create_materials={auto_create_materials})")
        response = self.api_client.check_inventory(mrr_id, auto_create_materials=auto_create_materials)
        report = parse_check_response(response)
        self.reports[mrr_id] = report
        logger.info(
            f"MRR {mrr_id}: inventory status {getattr(report.inventory_status, 'value', report.inventory_status)}, "
            f"{report.summary.available_items}/{report.summary.total_items} available"
        )
        try:
            self.refresh_items(report.item_ids())
        except WorkflowError as e:
            # The check itself went through; keep the previous material cache
            logger.warning(f"Could not refresh materials after inventory check of MRR {mrr_id}: {e.message}")
        return report

    def last_report(self, mrr_id: int) -> Optional[InventoryReport]:
        return self.reports.get(mrr_id)

    def inventory_status(self, mrr_id: int) -> Union[InventoryRollup, str, None]:
        report = self.reports.get(mrr_id)
        return report.inventory_status if report else None

    def load_all(self) -> List[Material]:
        """Replaces the cache with every material visible for the project."""
        materials = self.api_client.list_inventory(project_id=self.project_id, all_pages=True)
        self.materials = {m.material_id: m for m in materials}
        logger.debug(f"Material cache loaded with {len(self.materials)} records")
        return materials

    def refresh_items(self, item_ids: Iterable[int]) -> int:
        """
        Re-fetches the materials of the given items and patches them into the cache.

        Returns the number of material records fetched.
        """
        item_ids = set(item_ids)
        replacement: Dict[int, Material] = {}
        for item_id in item_ids:
            for material in self.api_client.list_inventory(item_id=item_id, project_id=self.project_id, all_pages=True):
                # The filter is advisory on some servers
                if material.resolved_item_id not in (None, item_id):
                    continue
                replacement[material.material_id] = material

        # Swap only once every fetch succeeded
        for mid in [mid for mid, m in self.materials.items() if m.resolved_item_id in item_ids]:
            del self.materials[mid]
        self.materials.update(replacement)
        logger.debug(f"Refreshed {len(replacement)} material record(s) for scoped re-fetch")
        return len(replacement)

    def warehouse_breakdown(self, item_id: int) -> List[WarehouseStock]:
        """Stock of one item summed per warehouse, largest first."""
        totals: Dict[Optional[int], WarehouseStock] = {}
        for material in self.materials.values():
            if material.resolved_item_id != item_id:
                continue
            wid = material.resolved_warehouse_id
            entry = totals.setdefault(wid, WarehouseStock(warehouse_id=wid, warehouse_name=material.warehouse_name))
            entry.stock_qty += material.stock_qty
        return sorted(totals.values(), key=lambda w: w.stock_qty, reverse=True)

    def low_stock(self) -> List[Material]:
        return [m for m in self.materials.values() if stock_tier(m) != StockTier.OK]


def suggested_quantity(line: InventoryCheckResult) -> float:
    """Never more than requested, never more than in stock."""
    return max(0.0, min(line.required_quantity, line.available_stock))


def build_issue_form(mrr: MaterialRequirementRequest, report: InventoryReport,
                     issued_by_user_id: Optional[int] = None, purpose: str = "",
                     received_by_user_id: Optional[int] = None) -> IssueForm:
    """
    Pre-populates an issue form from an MRR and its latest inventory check.

    Only issuable lines become rows; NOT_IN_INVENTORY and CREATED_NO_STOCK lines are left out.
    The receiver defaults to the issuing user.
    """
    if mrr.status not in ISSUABLE_MRR_STATUSES:
        logger.warning(f"Building issue form for MRR {mrr.mrr_number or mrr.mrr_id} in status {mrr.status.value}")
    header = IssueHeader(
        project_id=mrr.project_id,
        purpose=purpose or f"Issued against {mrr.mrr_number or f'MRR {mrr.mrr_id}'}",
        issued_by_user_id=issued_by_user_id,
        received_by_user_id=received_by_user_id if received_by_user_id is not None else issued_by_user_id,
        is_mrr_based=True,
        mrr_id=mrr.mrr_id,
        mrr_number=mrr.mrr_number or None,
        component_id=mrr.component_id,
        subcontractor_id=mrr.subcontractor_id,
    )
    form = IssueForm(header=header)
    for line in report.issuable_lines():
        mrr_item = mrr.find_item(line.mrr_item_id) if line.mrr_item_id is not None else None
        form.add_row(IssueRow(
            material_id=line.material_id,
            quantity=suggested_quantity(line),
            warehouse_id=line.warehouse.warehouse_id if line.warehouse else None,
            item_name=line.item_name or (mrr_item.display_name if mrr_item else ""),
            unit_name=(mrr_item.unit.unit_name if mrr_item and mrr_item.unit else ""),
            warehouse_name=line.warehouse.warehouse_name if line.warehouse else "",
            mrr_item_id=line.mrr_item_id,
            item_id=line.item_id,
            available_stock=line.available_stock,
        ))
    logger.debug(f"Issue form for MRR {mrr.mrr_id} pre-populated with {len(form.rows)} row(s)")
    return form
