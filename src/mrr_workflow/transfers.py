# Module: src/mrr_workflow/transfers.py
# Description: Single-item site transfers and material returns, bounded by what was issued to the project.

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from .errors import FieldError, ValidationError, WorkflowError
from .models import IssueStatus, ReturnCondition
from .permissions import Authorizer, Capability
from .schemas import MaterialIssueRecord

logger = logging.getLogger(__name__)


def issued_balance(issues: Iterable[MaterialIssueRecord], project_id: int, material_id: int) -> float:
    """Quantity of a material issued to a project, ignoring cancelled issues."""
    return sum(
        issue.quantity_issued for issue in issues
        if issue.project_id == project_id
        and issue.resolved_material_id == material_id
        and issue.status != IssueStatus.CANCELLED
    )


@dataclass
class SiteTransferRequest:
    from_project_id: int = 0
    to_project_id: int = 0
    material_id: int = 0
    quantity: float = 0.0
    transfer_date: Optional[date] = field(default_factory=date.today)
    reason: str = ""
    requested_by_user_id: Optional[int] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "from_project_id": self.from_project_id,
            "to_project_id": self.to_project_id,
            "material_id": self.material_id,
            "quantity": self.quantity,
            "transfer_date": self.transfer_date.isoformat() if self.transfer_date else None,
            "transfer_reason": self.reason or None,
            "requested_by_user_id": self.requested_by_user_id,
        }


@dataclass
class MaterialReturnRequest:
    project_id: int = 0
    material_id: int = 0
    quantity: float = 0.0
    condition: Optional[ReturnCondition] = None
    returned_by_user_id: Optional[int] = None
    return_date: Optional[date] = field(default_factory=date.today)
    reason: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "material_id": self.material_id,
            "quantity": self.quantity,
            "return_date": self.return_date.isoformat() if self.return_date else None,
            "return_reason": self.reason or None,
            "condition_status": self.condition.value if self.condition else None,
            "returned_by_user_id": self.returned_by_user_id,
        }


@dataclass
class TransferOutcome:
    """Result of a single transfer or return call."""
    ok: bool
    record: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    error: Optional[Exception] = None


def _check_quantity(quantity: float, balance: float) -> List[FieldError]:
    if not quantity or quantity <= 0:
        return [FieldError("quantity", "Quantity must be greater than zero.")]
    if quantity > balance:
        return [FieldError("quantity", f"Quantity exceeds the {balance:g} issued to this project.")]
    return []


def validate_site_transfer(request: SiteTransferRequest, balance: float) -> None:
    errors = []
    if not request.from_project_id:
        errors.append(FieldError("from_project_id", "Please select the source project."))
    if not request.to_project_id:
        errors.append(FieldError("to_project_id", "Please select the destination project."))
    elif request.to_project_id == request.from_project_id:
        errors.append(FieldError("to_project_id", "Source and destination projects must be different."))
    if not request.material_id:
        errors.append(FieldError("material_id", "Please select a material."))
    if request.transfer_date is None:
        errors.append(FieldError("transfer_date", "Transfer date is required."))
    errors.extend(_check_quantity(request.quantity, balance))
    if errors:
        raise ValidationError("Invalid site transfer", errors)


def validate_material_return(request: MaterialReturnRequest, balance: float) -> None:
    errors = []
    if not request.project_id:
        errors.append(FieldError("project_id", "Please select a project."))
    if not request.material_id:
        errors.append(FieldError("material_id", "Please select a material."))
    if request.condition is None:
        errors.append(FieldError("condition", "Please select the condition of the returned material."))
    if request.returned_by_user_id is None:
        errors.append(FieldError("returned_by_user_id", "Please select who is returning the material."))
    if request.return_date is None:
        errors.append(FieldError("return_date", "Return date is required."))
    errors.extend(_check_quantity(request.quantity, balance))
    if errors:
        raise ValidationError("Invalid material return", errors)


class TransferService:
    """
    Validates and sends site transfers and returns.

    The available balance is computed from a fresh read of the issue records, so
    it can still race with issues created concurrently by other users.
    """

    def __init__(self, api_client, authorizer: Optional[Authorizer] = None):
        self.api_client = api_client
        self.authorizer = authorizer

    def balance(self, project_id: int, material_id: int) -> float:
        issues = self.api_client.list_material_issues(project_id=project_id, material_id=material_id, all_pages=True)
        return issued_balance(issues, project_id, material_id)

    def transfer(self, request: SiteTransferRequest) -> TransferOutcome:
        """
        Raises:
            ValidationError: the request is incomplete or exceeds the issued balance.
            PermissionDeniedError: the acting user may not transfer material.
        """
        if self.authorizer is not None:
            self.authorizer.require(Capability.TRANSFER_MATERIAL, "transfer material between sites")
        balance = self.balance(request.from_project_id, request.material_id) if request.from_project_id and request.material_id else 0.0
        validate_site_transfer(request, balance)
        logger.info(
            f"Transferring {request.quantity:g} of material {request.material_id} "
            f"from project {request.from_project_id} to {request.to_project_id}"
        )
        return self._send(self.api_client.create_site_transfer, request.to_payload(), "site transfer")

    def return_material(self, request: MaterialReturnRequest) -> TransferOutcome:
        if self.authorizer is not None:
            self.authorizer.require(Capability.RETURN_MATERIAL, "return material")
        balance = self.balance(request.project_id, request.material_id) if request.project_id and request.material_id else 0.0
        validate_material_return(request, balance)
        logger.info(f"Returning {request.quantity:g} of material {request.material_id} from project {request.project_id}")
        return self._send(self.api_client.create_material_return, request.to_payload(), "material return")

    def _send(self, create, payload: Dict[str, Any], label: str) -> TransferOutcome:
        try:
            record = create(payload)
        except WorkflowError as e:
            logger.warning(f"{label.capitalize()} rejected: {e.message}")
            return TransferOutcome(ok=False, reason=e.message, error=e)
        return TransferOutcome(ok=True, record=record)
