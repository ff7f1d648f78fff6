# Module: src/mrr_workflow/workflow.py
# Description: Orchestrates MRR mutations: guard locally, call the API, then re-fetch from the server.

import logging
from typing import Any, Dict, List, Optional, Union

from . import state_machine
from .errors import FieldError, InvalidTransitionError, ValidationError
from .inventory import InventoryProjection, InventoryReport, build_issue_form
from .models import ISSUABLE_MRR_STATUSES, IssueForm, MrrAction, MrrStatus, TransitionRecord
from .permissions import Authorizer, Capability
from .schemas import MaterialRequirementRequest, MrrDraft, MrrItem

logger = logging.getLogger(__name__)

MrrRef = Union[int, MaterialRequirementRequest]


class MrrWorkflow:
    """
    Client-side owner of the MRR list.

    Holds no authoritative state: after every accepted mutation the list is
    reloaded from the server instead of being patched locally.
    """

    def __init__(self, api_client, authorizer: Optional[Authorizer] = None,
                 inventory: Optional[InventoryProjection] = None):
        self.api_client = api_client
        self.authorizer = authorizer
        self.inventory = inventory or InventoryProjection(api_client)
        self.mrrs: List[MaterialRequirementRequest] = []
        self.history: List[TransitionRecord] = []
        self.filters: Dict[str, Any] = {}

    # --- Reads ---

    def reload(self, **filters) -> List[MaterialRequirementRequest]:
        """Re-fetches the MRR list. Filters given here are remembered for later reloads."""
        if filters:
            self.filters = {k: v for k, v in filters.items() if v is not None}
        self.mrrs = self.api_client.list_mrrs(all_pages=True, **self.filters)
        logger.debug(f"Loaded {len(self.mrrs)} MRR(s) with filters {self.filters}")
        return self.mrrs

    def get(self, mrr_id: int) -> MaterialRequirementRequest:
        return self.api_client.get_mrr(mrr_id)

    def cached(self, mrr_id: int) -> Optional[MaterialRequirementRequest]:
        return next((m for m in self.mrrs if m.mrr_id == mrr_id), None)

    def _current(self, mrr: MrrRef) -> MaterialRequirementRequest:
        if isinstance(mrr, MaterialRequirementRequest):
            return mrr
        return self.cached(mrr) or self.get(mrr)

    def admissible_actions(self, mrr: MrrRef) -> List[MrrAction]:
        current = self._current(mrr)
        return state_machine.admissible_actions(
            current.status, self.inventory.inventory_status(current.mrr_id), self.authorizer
        )

    def can_force(self, mrr: MrrRef) -> bool:
        return state_machine.can_force(self._current(mrr).status, self.authorizer)

    # --- Draft editing ---

    def create(self, draft: MrrDraft) -> MaterialRequirementRequest:
        self._require(Capability.CREATE_MRR, "create an MRR")
        if not draft.items:
            raise ValidationError("Please add at least one item", [FieldError("items", "Please add at least one item.")])
        unit_errors = [
            FieldError("unit_id", "Please select a unit.", row=index)
            for index, item in enumerate(draft.items, start=1)
            if item.unit_id is None
        ]
        if unit_errors:
            raise ValidationError("Please complete the MRR items", unit_errors)
        created = self.api_client.create_mrr(draft)
        logger.info(
            f"Created MRR {created.mrr_number or created.mrr_id} with {len(draft.items)} item(s), "
            f"estimated cost {draft.total_estimated_cost:.2f}"
        )
        self.reload()
        return created

    def update(self, mrr: MrrRef, fields: Dict[str, Any]) -> MaterialRequirementRequest:
        current = self._editable(mrr, "edit this MRR")
        self.api_client.update_mrr(current.mrr_id, fields)
        return self._refreshed(current.mrr_id)

    def delete(self, mrr: MrrRef) -> None:
        current = self._editable(mrr, "delete this MRR")
        self.api_client.delete_mrr(current.mrr_id)
        logger.info(f"Deleted MRR {current.mrr_number or current.mrr_id}")
        self.inventory.reports.pop(current.mrr_id, None)
        self.reload()

    def add_item(self, mrr: MrrRef, item: MrrItem) -> MaterialRequirementRequest:
        current = self._editable(mrr, "add items to this MRR")
        self.api_client.add_mrr_item(current.mrr_id, item)
        return self._refreshed(current.mrr_id)

    def update_item(self, mrr: MrrRef, mrr_item_id: int, fields: Dict[str, Any]) -> MaterialRequirementRequest:
        current = self._editable(mrr, "edit items of this MRR")
        self.api_client.update_mrr_item(current.mrr_id, mrr_item_id, fields)
        return self._refreshed(current.mrr_id)

    def remove_item(self, mrr: MrrRef, mrr_item_id: int) -> MaterialRequirementRequest:
        current = self._editable(mrr, "remove items from this MRR")
        self.api_client.delete_mrr_item(current.mrr_id, mrr_item_id)
        return self._refreshed(current.mrr_id)

    def _editable(self, mrr: MrrRef, action: str) -> MaterialRequirementRequest:
        current = self._current(mrr)
        if not state_machine.is_editable(current.status):
            raise InvalidTransitionError(f"Cannot {action} while it is {current.status.value}.")
        self._require(Capability.CREATE_MRR, action)
        return current

    # --- Transitions ---

    def submit(self, mrr: MrrRef, note: Optional[str] = None) -> MaterialRequirementRequest:
        return self.apply(mrr, MrrAction.SUBMIT, note)

    def approve(self, mrr: MrrRef, note: Optional[str] = None) -> MaterialRequirementRequest:
        return self.apply(mrr, MrrAction.APPROVE, note)

    def reject(self, mrr: MrrRef, reason: Optional[str] = None) -> MaterialRequirementRequest:
        return self.apply(mrr, MrrAction.REJECT, reason)

    def mark_processing(self, mrr: MrrRef, note: Optional[str] = None) -> MaterialRequirementRequest:
        return self.apply(mrr, MrrAction.MARK_PROCESSING, note)

    def apply(self, mrr: MrrRef, action: MrrAction, note: Optional[str] = None) -> MaterialRequirementRequest:
        """
        Performs a regular action.

        The guard runs against the last known status before anything is sent, so an
        inadmissible action never reaches the server.
        """
        current = self._current(mrr)
        transition = state_machine.plan_transition(
            current.status, action, self.inventory.inventory_status(current.mrr_id), self.authorizer, note
        )
        mrr_id = current.mrr_id

        if transition.action == MrrAction.SUBMIT:
            self.api_client.submit_mrr(mrr_id)
        elif transition.action == MrrAction.APPROVE:
            self.api_client.approve_mrr(mrr_id, "approve")
        elif transition.action == MrrAction.REJECT:
            self.api_client.approve_mrr(mrr_id, "reject", rejection_reason=transition.note)
        elif transition.action == MrrAction.MARK_PROCESSING:
            self.api_client.update_mrr_status(mrr_id, MrrStatus.PROCESSING, notes=transition.note)

        self._record(TransitionRecord(
            mrr_id=mrr_id,
            from_status=transition.from_status,
            to_status=transition.to_status,
            action=transition.action.value,
            note=transition.note,
        ))
        logger.info(
            f"MRR {current.mrr_number or mrr_id}: {transition.action.value} "
            f"{transition.from_status.value} -> {transition.to_status.value}"
            + (f" ({transition.note})" if transition.note else "")
        )
        return self._refreshed(mrr_id)

    def force_status(self, mrr: MrrRef, target: MrrStatus, note: str) -> MaterialRequirementRequest:
        """Administrative overwrite of the status, bypassing the transition table."""
        current = self._current(mrr)
        force = state_machine.plan_force_transition(current.status, target, note, self.authorizer)
        self.api_client.update_mrr_status(current.mrr_id, force.to_status, notes=force.note)
        self._record(TransitionRecord(
            mrr_id=current.mrr_id,
            from_status=force.from_status,
            to_status=force.to_status,
            action="FORCE",
            note=force.note,
            forced=True,
        ))
        logger.warning(
            f"MRR {current.mrr_number or current.mrr_id}: status forced "
            f"{force.from_status.value} -> {force.to_status.value} ({force.note})"
        )
        return self._refreshed(current.mrr_id)

    # --- Inventory ---

    def check_inventory(self, mrr: MrrRef, auto_create_materials: bool = False) -> InventoryReport:
        self._require(Capability.CHECK_INVENTORY, "check inventory for this MRR")
        return self._run_check(self._current(mrr), auto_create_materials)

    def refresh_inventory(self, mrr: MrrRef) -> InventoryReport:
        """Re-runs the check without creating materials; used to decide issuing and processing."""
        return self._run_check(self._current(mrr), auto_create_materials=False)

    def _run_check(self, current: MaterialRequirementRequest, auto_create_materials: bool) -> InventoryReport:
        report = self.inventory.check(current.mrr_id, auto_create_materials=auto_create_materials)
        if report.mrr_status != current.status:
            # The resolver moves APPROVED requests to PROCESSING when everything is in stock
            self._record(TransitionRecord(
                mrr_id=current.mrr_id,
                from_status=current.status,
                to_status=report.mrr_status,
                action="INVENTORY_CHECK",
                note=report.message,
            ))
            logger.info(
                f"MRR {current.mrr_number or current.mrr_id}: status now {report.mrr_status.value} after inventory check"
            )
        self.reload()
        return report

    def issue_form(self, mrr: MrrRef, issued_by_user_id: Optional[int] = None, purpose: str = "") -> IssueForm:
        """Pre-populated issue form for an MRR, running an inventory check if none is known yet."""
        current = self._current(mrr)
        if current.status not in ISSUABLE_MRR_STATUSES:
            raise InvalidTransitionError(
                f"Material can only be issued against approved MRRs; this one is {current.status.value}."
            )
        report = self.inventory.last_report(current.mrr_id)
        if report is None:
            report = self.refresh_inventory(current)
            current = self.cached(current.mrr_id) or self.get(current.mrr_id)
        return build_issue_form(current, report, issued_by_user_id=issued_by_user_id, purpose=purpose)

    # --- Helpers ---

    def _require(self, capability: Capability, action: str) -> None:
        if self.authorizer is not None:
            self.authorizer.require(capability, action)

    def _record(self, record: TransitionRecord) -> None:
        self.history.append(record)

    def _refreshed(self, mrr_id: int) -> MaterialRequirementRequest:
        self.reload()
        return self.cached(mrr_id) or self.get(mrr_id)
