# Module: src/mrr_workflow/models.py
# Description: Enums and client-side data structures used throughout the application.

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class MrrStatus(str, Enum):
    """Lifecycle states of a Material Requirement Request."""
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (MrrStatus.COMPLETED, MrrStatus.CANCELLED, MrrStatus.REJECTED)


# Statuses whose MRRs can have material issued against them
ISSUABLE_MRR_STATUSES = (MrrStatus.APPROVED, MrrStatus.PROCESSING, MrrStatus.COMPLETED)


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class MrrAction(str, Enum):
    """Regular (non-forced) actions of the MRR state machine."""
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    MARK_PROCESSING = "MARK_PROCESSING"


class LineStatus(str, Enum):
    """Classification of a single MRR line against inventory."""
    AVAILABLE = "AVAILABLE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    NOT_IN_INVENTORY = "NOT_IN_INVENTORY"
    CREATED_NO_STOCK = "CREATED_NO_STOCK"


class InventoryRollup(str, Enum):
    """Whole-MRR inventory status derived from its line classifications."""
    READY_FOR_ISSUE = "READY_FOR_ISSUE"
    NEEDS_PURCHASE = "NEEDS_PURCHASE"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"


class IssueStatus(str, Enum):
    PENDING = "PENDING"
    ISSUED = "ISSUED"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"


class ReturnCondition(str, Enum):
    GOOD = "GOOD"
    DAMAGED = "DAMAGED"
    USED = "USED"
    EXPIRED = "EXPIRED"


class StockTier(str, Enum):
    """Low-stock classification used by every inventory screen."""
    OK = "OK"
    LOW = "LOW"             # at or below reorder point
    CRITICAL = "CRITICAL"   # at or below minimum stock level


@dataclass
class InventoryCheckSummary:
    """Counts of MRR lines per classification."""
    total_items: int = 0
    available_items: int = 0
    insufficient_stock_items: int = 0
    not_in_inventory_items: int = 0
    created_items: int = 0


@dataclass
class WarehouseStock:
    warehouse_id: Optional[int]
    warehouse_name: str
    stock_qty: float = 0.0


@dataclass
class TransitionRecord:
    """Client-side audit entry for a status change that the server accepted."""
    mrr_id: int
    from_status: MrrStatus
    to_status: MrrStatus
    action: str # MrrAction value, or "FORCE" for administrative overrides
    note: Optional[str] = None
    forced: bool = False
    at: datetime = field(default_factory=datetime.now)


# --- Material issue form ---

@dataclass
class IssueHeader:
    """Fields shared by every line of one material issue submission."""
    project_id: int = 0
    issue_date: date = field(default_factory=date.today)
    purpose: str = ""
    issued_by_user_id: Optional[int] = None
    received_by_user_id: Optional[int] = None
    is_mrr_based: bool = True
    mrr_id: Optional[int] = None
    mrr_number: Optional[str] = None
    component_id: Optional[int] = None
    subcontractor_id: Optional[int] = None


@dataclass
class IssueRow:
    """One editable row of the issue form. Zero means 'not chosen yet'."""
    material_id: int = 0
    quantity: float = 0.0
    warehouse_id: Optional[int] = None
    item_name: str = ""
    unit_name: str = ""
    warehouse_name: str = ""
    mrr_item_id: Optional[int] = None
    item_id: Optional[int] = None
    available_stock: Optional[float] = None

    @property
    def has_material(self) -> bool:
        return bool(self.material_id) and self.material_id > 0

    @property
    def has_quantity(self) -> bool:
        return bool(self.quantity) and self.quantity > 0

    @property
    def is_untouched(self) -> bool:
        return not self.has_material and not self.has_quantity


@dataclass
class IssueForm:
    header: IssueHeader = field(default_factory=IssueHeader)
    rows: List[IssueRow] = field(default_factory=list)

    def add_row(self, row: Optional[IssueRow] = None) -> IssueRow:
        row = row or IssueRow()
        self.rows.append(row)
        return row

    def remove_row(self, index: int) -> None:
        del self.rows[index]

    def reset(self) -> None:
        self.header = IssueHeader()
        self.rows = []


@dataclass
class IssueLine:
    """A validated (material, warehouse, quantity) tuple ready for submission."""
    material_id: int
    quantity: float
    warehouse_id: Optional[int] = None
    item_name: str = ""
    mrr_item_id: Optional[int] = None
    item_id: Optional[int] = None
    row: Optional[int] = None # 1-based row number in the originating form


@dataclass
class IssueSucceeded:
    line: IssueLine
    issue_id: Optional[int] = None
    record: Dict[str, Any] = field(default_factory=dict)
    ok: bool = True


@dataclass
class IssueFailed:
    line: IssueLine
    reason: str
    error: Optional[Exception] = None
    ok: bool = False


IssueOutcome = Union[IssueSucceeded, IssueFailed]


@dataclass
class BatchIssueResult:
    """Per-line outcome of one material issue submission."""
    header: IssueHeader
    outcomes: List[IssueOutcome] = field(default_factory=list)
    records: Optional[list] = None # Issue records re-fetched after the batch, if any line succeeded

    @property
    def succeeded(self) -> List[IssueSucceeded]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[IssueFailed]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def all_succeeded(self) -> bool:
        return bool(self.outcomes) and not self.failed

    @property
    def failed_lines(self) -> List[IssueLine]:
        return [o.line for o in self.failed]
