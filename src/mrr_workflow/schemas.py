# Module: src/mrr_workflow/schemas.py
# Description: pydantic models for the JSON records exchanged with the REST API.

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from .models import (
    ApprovalStatus,
    InventoryCheckSummary,
    IssueStatus,
    LineStatus,
    MrrStatus,
    Priority,
)


def _coerce_date(value):
    """Accepts 'YYYY-MM-DD' as well as full ISO timestamps for DATE columns."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        return date.fromisoformat(value[:10])
    return value


class WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ProjectRef(WireModel):
    project_id: Optional[int] = None
    name: str = ""


class WarehouseRef(WireModel):
    warehouse_id: Optional[int] = None
    warehouse_name: str = ""
    address: Optional[str] = None


class ItemRef(WireModel):
    item_id: Optional[int] = None
    item_name: str = ""
    item_code: Optional[str] = None


class UnitRef(WireModel):
    unit_id: Optional[int] = None
    unit_name: str = ""
    unit_symbol: Optional[str] = None


# --- Material Requirement Requests ---

class MrrItem(WireModel):
    """One requested line of an MRR."""
    mrr_item_id: Optional[int] = None
    item_id: int
    quantity_requested: float = Field(gt=0)
    unit_id: Optional[int] = None
    specifications: Optional[str] = None
    purpose: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    estimated_cost_per_unit: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None
    item: Optional[ItemRef] = None
    unit: Optional[UnitRef] = None

    @computed_field
    @property
    def total_estimated_cost(self) -> float:
        return self.quantity_requested * (self.estimated_cost_per_unit or 0.0)

    @property
    def display_name(self) -> str:
        if self.item and self.item.item_name:
            return self.item.item_name
        return f"Item {self.item_id}"

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(mode="json", exclude_none=True, exclude={"item", "unit", "mrr_item_id"})
        payload.pop("total_estimated_cost", None)
        return payload


class _MrrBase(WireModel):
    project_id: int
    required_date: Optional[date] = None
    priority: Priority = Priority.MEDIUM
    notes: Optional[str] = None
    component_id: Optional[int] = None
    subcontractor_id: Optional[int] = None
    items: List[MrrItem] = Field(default_factory=list)

    @field_validator("required_date", mode="before")
    @classmethod
    def normalize_required_date(cls, v):
        return _coerce_date(v)

    @computed_field
    @property
    def total_estimated_cost(self) -> float:
        # Always derived from the lines, never stored independently
        return sum(item.total_estimated_cost for item in self.items)


class MrrDraft(_MrrBase):
    """A new MRR as submitted to POST /mrrs."""

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(mode="json", exclude_none=True, exclude={"items", "total_estimated_cost"})
        payload["items"] = [item.to_payload() for item in self.items]
        return payload


class MaterialRequirementRequest(_MrrBase):
    mrr_id: int
    mrr_number: str = ""
    requested_by_user_id: Optional[int] = None
    request_date: Optional[date] = None
    status: MrrStatus = MrrStatus.DRAFT
    approval_status: Optional[ApprovalStatus] = None
    approved_by_user_id: Optional[int] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    project: Optional[ProjectRef] = None

    @field_validator("request_date", mode="before")
    @classmethod
    def normalize_request_date(cls, v):
        return _coerce_date(v)

    @property
    def project_name(self) -> str:
        return self.project.name if self.project and self.project.name else f"Project {self.project_id}"

    def find_item(self, mrr_item_id: int) -> Optional[MrrItem]:
        return next((i for i in self.items if i.mrr_item_id == mrr_item_id), None)


# --- Inventory ---

class Material(WireModel):
    """A stock record tied to an item master, warehouse and/or project."""
    material_id: int
    name: str = ""
    item_id: Optional[int] = None
    stock_qty: float = 0.0
    minimum_stock_level: float = 0.0
    maximum_stock_level: Optional[float] = None
    reorder_point: float = 0.0
    cost_per_unit: Optional[float] = None
    unit: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None
    warehouse_id: Optional[int] = None
    project_id: Optional[int] = None
    item: Optional[ItemRef] = None
    warehouse: Optional[WarehouseRef] = None
    project: Optional[ProjectRef] = None

    @field_validator("stock_qty", "minimum_stock_level", "reorder_point", mode="before")
    @classmethod
    def _none_is_zero(cls, v):
        return 0.0 if v is None else v

    @property
    def resolved_item_id(self) -> Optional[int]:
        if self.item_id is not None:
            return self.item_id
        return self.item.item_id if self.item else None

    @property
    def resolved_warehouse_id(self) -> Optional[int]:
        if self.warehouse_id is not None:
            return self.warehouse_id
        return self.warehouse.warehouse_id if self.warehouse else None

    @property
    def warehouse_name(self) -> str:
        return self.warehouse.warehouse_name if self.warehouse and self.warehouse.warehouse_name else "Unknown Warehouse"


class MaterialDetails(WireModel):
    cost_per_unit: Optional[float] = None
    minimum_stock_level: Optional[float] = None
    maximum_stock_level: Optional[float] = None
    reorder_point: Optional[float] = None
    location: Optional[str] = None
    status: Optional[str] = None


class InventoryCheckResult(WireModel):
    """The resolver's verdict for one MRR line."""
    mrr_item_id: Optional[int] = None
    item_id: Optional[int] = None
    item_name: str = ""
    item_code: Optional[str] = None
    required_quantity: float = 0.0
    available_stock: float = 0.0
    status: LineStatus
    material_id: Optional[int] = None
    warehouse: Optional[WarehouseRef] = None
    project: Optional[ProjectRef] = None
    material_details: Optional[MaterialDetails] = None

    @field_validator("required_quantity", "available_stock", mode="before")
    @classmethod
    def _none_is_zero(cls, v):
        return 0.0 if v is None else v

    @property
    def material_exists(self) -> bool:
        return self.material_id is not None


class InventoryCheckResponse(WireModel):
    """Body of POST /mrrs/:id/check-inventory."""
    mrr_id: int
    mrr_status: MrrStatus
    inventory_status: str
    inventory_check_results: List[InventoryCheckResult] = Field(default_factory=list)
    materials_created: int = 0
    all_materials_available: bool = False
    summary: Optional[InventoryCheckSummary] = None
    message: Optional[str] = None


# --- Material issues ---

class MaterialRef(WireModel):
    material_id: Optional[int] = None
    name: str = ""
    unit: Optional[str] = None
    stock_qty: Optional[float] = None


class MaterialIssueRecord(WireModel):
    issue_id: Optional[int] = None
    project_id: Optional[int] = None
    material_id: Optional[int] = None
    quantity_issued: float = 0.0
    issue_date: Optional[date] = None
    issue_purpose: Optional[str] = None
    location: Optional[str] = None
    issued_by_user_id: Optional[int] = None
    received_by_user_id: Optional[int] = None
    mrr_id: Optional[int] = None
    component_id: Optional[int] = None
    subcontractor_id: Optional[int] = None
    warehouse_id: Optional[int] = None
    status: IssueStatus = IssueStatus.PENDING
    material: Optional[MaterialRef] = None
    project: Optional[ProjectRef] = None
    warehouse: Optional[WarehouseRef] = None

    @field_validator("issue_date", mode="before")
    @classmethod
    def normalize_issue_date(cls, v):
        return _coerce_date(v)

    @property
    def resolved_material_id(self) -> Optional[int]:
        if self.material_id is not None:
            return self.material_id
        return self.material.material_id if self.material else None
