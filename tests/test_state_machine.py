import pytest

from mrr_workflow.errors import InvalidTransitionError, PermissionDeniedError, ValidationError
from mrr_workflow.models import InventoryRollup, MrrAction, MrrStatus
from mrr_workflow.permissions import RoleAuthorizer
from mrr_workflow.state_machine import (
    TRANSITIONS,
    admissible_actions,
    can_force,
    is_editable,
    next_status,
    plan_force_transition,
    plan_transition,
)

READY = InventoryRollup.READY_FOR_ISSUE

# Admissible actions per status, with the inventory rollup at READY_FOR_ISSUE
EXPECTED_ACTIONS = {
    MrrStatus.DRAFT: [MrrAction.SUBMIT],
    MrrStatus.SUBMITTED: [MrrAction.APPROVE, MrrAction.REJECT],
    MrrStatus.UNDER_REVIEW: [],
    MrrStatus.APPROVED: [MrrAction.MARK_PROCESSING],
    MrrStatus.REJECTED: [],
    MrrStatus.PROCESSING: [],
    MrrStatus.COMPLETED: [],
    MrrStatus.CANCELLED: [],
}


@pytest.mark.parametrize("status", list(MrrStatus))
def test_admissible_actions_match_table(status):
    assert admissible_actions(status, READY) == EXPECTED_ACTIONS[status]


@pytest.mark.parametrize("status", list(MrrStatus))
@pytest.mark.parametrize("action", list(MrrAction))
def test_inadmissible_actions_are_rejected(status, action):
    if action in EXPECTED_ACTIONS[status]:
        transition = plan_transition(status, action, READY)
        assert transition.to_status == TRANSITIONS[(status, action)]
    else:
        with pytest.raises(InvalidTransitionError):
            plan_transition(status, action, READY)


def test_draft_never_offers_mark_processing():
    assert MrrAction.MARK_PROCESSING not in admissible_actions(MrrStatus.DRAFT, READY)


@pytest.mark.parametrize("rollup", [None, InventoryRollup.NEEDS_PURCHASE, InventoryRollup.INSUFFICIENT_STOCK, "SOMETHING_ELSE"])
def test_mark_processing_needs_ready_inventory(rollup):
    assert admissible_actions(MrrStatus.APPROVED, rollup) == []
    with pytest.raises(InvalidTransitionError) as excinfo:
        plan_transition(MrrStatus.APPROVED, MrrAction.MARK_PROCESSING, rollup)
    assert "READY_FOR_ISSUE" in str(excinfo.value)


def test_mark_processing_accepts_rollup_string():
    transition = plan_transition("APPROVED", "MARK_PROCESSING", "READY_FOR_ISSUE")
    assert transition.from_status == MrrStatus.APPROVED
    assert transition.to_status == MrrStatus.PROCESSING


def test_approval_requires_capability():
    engineer = RoleAuthorizer("On-Site Engineers")
    assert admissible_actions(MrrStatus.SUBMITTED, authorizer=engineer) == []
    with pytest.raises(PermissionDeniedError):
        plan_transition(MrrStatus.SUBMITTED, MrrAction.APPROVE, authorizer=engineer)

    manager = RoleAuthorizer("Project Manager")
    transition = plan_transition(MrrStatus.SUBMITTED, MrrAction.REJECT, authorizer=manager, note="Over budget")
    assert transition.to_status == MrrStatus.REJECTED
    assert transition.note == "Over budget"


def test_status_is_checked_before_permission():
    # An unauthorised user asking for an impossible action gets the transition error
    with pytest.raises(InvalidTransitionError):
        plan_transition(MrrStatus.DRAFT, MrrAction.APPROVE, authorizer=RoleAuthorizer("Accountant"))


def test_next_status_lookup():
    assert next_status(MrrStatus.DRAFT, MrrAction.SUBMIT) == MrrStatus.SUBMITTED
    assert next_status(MrrStatus.DRAFT, MrrAction.APPROVE) is None


# --- Administrative override ---

@pytest.mark.parametrize("status", [s for s in MrrStatus if s != MrrStatus.CANCELLED])
def test_force_allowed_from_any_status_but_cancelled(status):
    target = MrrStatus.CANCELLED if status != MrrStatus.CANCELLED else MrrStatus.DRAFT
    force = plan_force_transition(status, target, "  Duplicate request  ")
    assert force.from_status == status
    assert force.to_status == target
    assert force.note == "Duplicate request"
    assert can_force(status)


def test_force_from_cancelled_is_refused():
    assert not can_force(MrrStatus.CANCELLED)
    with pytest.raises(InvalidTransitionError):
        plan_force_transition(MrrStatus.CANCELLED, MrrStatus.DRAFT, "reopen")


def test_force_to_same_status_is_refused():
    with pytest.raises(InvalidTransitionError):
        plan_force_transition(MrrStatus.APPROVED, MrrStatus.APPROVED, "no-op")


@pytest.mark.parametrize("note", [None, "", "   "])
def test_force_requires_note(note):
    with pytest.raises(ValidationError) as excinfo:
        plan_force_transition(MrrStatus.APPROVED, MrrStatus.COMPLETED, note)
    assert excinfo.value.errors[0].field == "notes"


def test_force_requires_status_capability():
    store = RoleAuthorizer("Store Manager")
    assert not can_force(MrrStatus.APPROVED, store)
    with pytest.raises(PermissionDeniedError):
        plan_force_transition(MrrStatus.APPROVED, MrrStatus.COMPLETED, "done", store)
    assert can_force(MrrStatus.APPROVED, RoleAuthorizer("Inventory Manager"))


def test_only_drafts_are_editable():
    assert is_editable(MrrStatus.DRAFT)
    assert not any(is_editable(s) for s in MrrStatus if s != MrrStatus.DRAFT)
