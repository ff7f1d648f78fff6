# Module: src/mrr_workflow/state_machine.py
# Description: Legal status transitions for Material Requirement Requests.
#
# Regular actions are looked up in TRANSITIONS. The administrative status
# override is modelled separately as a ForceTransition so it can never be
# reached through the regular action path.

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from .errors import FieldError, InvalidTransitionError, ValidationError
from .models import InventoryRollup, MrrAction, MrrStatus
from .permissions import Authorizer, Capability

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[Tuple[MrrStatus, MrrAction], MrrStatus] = {
    (MrrStatus.DRAFT, MrrAction.SUBMIT): MrrStatus.SUBMITTED,
    (MrrStatus.SUBMITTED, MrrAction.APPROVE): MrrStatus.APPROVED,
    (MrrStatus.SUBMITTED, MrrAction.REJECT): MrrStatus.REJECTED,
    (MrrStatus.APPROVED, MrrAction.MARK_PROCESSING): MrrStatus.PROCESSING,
}

ACTION_CAPABILITY: Dict[MrrAction, Capability] = {
    MrrAction.SUBMIT: Capability.CREATE_MRR,
    MrrAction.APPROVE: Capability.APPROVE_MRR,
    MrrAction.REJECT: Capability.APPROVE_MRR,
    MrrAction.MARK_PROCESSING: Capability.CHANGE_MRR_STATUS,
}

ACTION_LABELS: Dict[MrrAction, str] = {
    MrrAction.SUBMIT: "submit this MRR",
    MrrAction.APPROVE: "approve this MRR",
    MrrAction.REJECT: "reject this MRR",
    MrrAction.MARK_PROCESSING: "mark this MRR as processing",
}

# Only DRAFT requests may have their header or lines edited, or be deleted
EDITABLE_STATUSES = (MrrStatus.DRAFT,)


@dataclass(frozen=True)
class Transition:
    action: MrrAction
    from_status: MrrStatus
    to_status: MrrStatus
    note: Optional[str] = None


@dataclass(frozen=True)
class ForceTransition:
    """Administrative overwrite of an MRR status, always with an audit note."""
    from_status: MrrStatus
    to_status: MrrStatus
    note: str


def _as_rollup(inventory_status: Union[InventoryRollup, str, None]) -> Optional[InventoryRollup]:
    if inventory_status is None or isinstance(inventory_status, InventoryRollup):
        return inventory_status
    try:
        return InventoryRollup(inventory_status)
    except ValueError:
        return None


def next_status(status: MrrStatus, action: MrrAction) -> Optional[MrrStatus]:
    """Returns the target status for (status, action), or None if the pair is not in the table."""
    return TRANSITIONS.get((MrrStatus(status), MrrAction(action)))


def _guard_failure(status: MrrStatus, action: MrrAction,
                   inventory_status: Optional[InventoryRollup],
                   authorizer: Optional[Authorizer]) -> Optional[str]:
    """Returns why the action is not admissible, or None when it is."""
    if next_status(status, action) is None:
        return f"Cannot {ACTION_LABELS[action]} while it is {status.value}."
    if action == MrrAction.MARK_PROCESSING and inventory_status != InventoryRollup.READY_FOR_ISSUE:
        return "Only MRRs whose inventory check is READY_FOR_ISSUE can be marked as processing."
    if authorizer is not None and not authorizer.is_permitted(ACTION_CAPABILITY[action]):
        return f"You are not permitted to {ACTION_LABELS[action]}."
    return None


def admissible_actions(status: MrrStatus,
                       inventory_status: Union[InventoryRollup, str, None] = None,
                       authorizer: Optional[Authorizer] = None) -> List[MrrAction]:
    """Lists the regular actions available from `status`, in declaration order."""
    status = MrrStatus(status)
    rollup = _as_rollup(inventory_status)
    return [a for a in MrrAction if _guard_failure(status, a, rollup, authorizer) is None]


def plan_transition(status: MrrStatus, action: MrrAction,
                    inventory_status: Union[InventoryRollup, str, None] = None,
                    authorizer: Optional[Authorizer] = None,
                    note: Optional[str] = None) -> Transition:
    """
    Checks a regular action against the table and its guards.

    Raises:
        InvalidTransitionError: the pair is not in the table or a state guard fails.
        PermissionDeniedError: the authorizer refuses the action's capability.
    """
    status = MrrStatus(status)
    action = MrrAction(action)
    rollup = _as_rollup(inventory_status)

    target = next_status(status, action)
    if target is None or (action == MrrAction.MARK_PROCESSING and rollup != InventoryRollup.READY_FOR_ISSUE):
        reason = _guard_failure(status, action, rollup, None)
        logger.warning(f"Rejected {action.value} from {status.value}: {reason}")
        raise InvalidTransitionError(reason)
    if authorizer is not None:
        authorizer.require(ACTION_CAPABILITY[action], ACTION_LABELS[action])
    return Transition(action=action, from_status=status, to_status=target, note=(note or None))


def can_force(status: MrrStatus, authorizer: Optional[Authorizer] = None) -> bool:
    if MrrStatus(status) == MrrStatus.CANCELLED:
        return False
    return authorizer is None or authorizer.is_permitted(Capability.CHANGE_MRR_STATUS)


def plan_force_transition(status: MrrStatus, target: MrrStatus, note: Optional[str],
                          authorizer: Optional[Authorizer] = None) -> ForceTransition:
    """
    Validates an administrative status overwrite.

    Any target is allowed except from CANCELLED; the note is mandatory and the
    acting user needs CHANGE_MRR_STATUS.
    """
    status = MrrStatus(status)
    target = MrrStatus(target)
    if status == MrrStatus.CANCELLED:
        raise InvalidTransitionError("Cancelled MRRs cannot change status.")
    if target == status:
        raise InvalidTransitionError(f"MRR is already {status.value}.")
    if not note or not note.strip():
        raise ValidationError(
            "A note is required when changing status",
            [FieldError("notes", "Describe why the status is being changed.")],
        )
    if authorizer is not None:
        authorizer.require(Capability.CHANGE_MRR_STATUS, "change the status of this MRR")
    return ForceTransition(from_status=status, to_status=target, note=note.strip())


def is_editable(status: MrrStatus) -> bool:
    return MrrStatus(status) in EDITABLE_STATUSES
