import pytest
from unittest.mock import MagicMock

from mrr_workflow.errors import InvalidTransitionError, PermissionDeniedError, TransportError, ValidationError
from mrr_workflow.models import InventoryRollup, MrrAction, MrrStatus
from mrr_workflow.permissions import RoleAuthorizer
from mrr_workflow.schemas import InventoryCheckResponse, MaterialRequirementRequest, MrrDraft, MrrItem
from mrr_workflow.workflow import MrrWorkflow


def _mrr(status, mrr_id=1, **extra):
    return MaterialRequirementRequest(mrr_id=mrr_id, mrr_number=f"MRR-{mrr_id}", project_id=3, status=status, **extra)


@pytest.fixture
def api_client():
    client = MagicMock(name="ApiClient")
    client.list_inventory.return_value = []
    return client


def _workflow(api_client, status, authorizer=None):
    """Workflow whose cached list holds one MRR in `status`."""
    current = _mrr(status)
    api_client.list_mrrs.return_value = [current]
    workflow = MrrWorkflow(api_client, authorizer)
    workflow.reload()
    api_client.reset_mock()
    return workflow


def test_inadmissible_action_makes_no_call(api_client):
    workflow = _workflow(api_client, MrrStatus.DRAFT)
    assert MrrAction.MARK_PROCESSING not in workflow.admissible_actions(1)
    with pytest.raises(InvalidTransitionError):
        workflow.mark_processing(1)
    assert api_client.method_calls == []


def test_submit_calls_endpoint_records_and_reloads(api_client):
    workflow = _workflow(api_client, MrrStatus.DRAFT)
    api_client.list_mrrs.return_value = [_mrr(MrrStatus.SUBMITTED)]

    updated = workflow.submit(1, note="Ready for review")

    api_client.submit_mrr.assert_called_once_with(1)
    api_client.list_mrrs.assert_called_once_with(all_pages=True)
    assert updated.status == MrrStatus.SUBMITTED
    record = workflow.history[-1]
    assert (record.from_status, record.to_status, record.action, record.note) == (
        MrrStatus.DRAFT, MrrStatus.SUBMITTED, "SUBMIT", "Ready for review")
    assert not record.forced


def test_reject_sends_reason(api_client):
    workflow = _workflow(api_client, MrrStatus.SUBMITTED)
    workflow.reject(1, "Duplicate")
    api_client.approve_mrr.assert_called_once_with(1, "reject", rejection_reason="Duplicate")


def test_approve_requires_role(api_client):
    workflow = _workflow(api_client, MrrStatus.SUBMITTED, RoleAuthorizer("Store Manager"))
    assert workflow.admissible_actions(1) == []
    with pytest.raises(PermissionDeniedError):
        workflow.approve(1)
    api_client.approve_mrr.assert_not_called()


def test_mark_processing_after_ready_check(api_client):
    workflow = _workflow(api_client, MrrStatus.APPROVED)
    api_client.check_inventory.return_value = InventoryCheckResponse(
        mrr_id=1, mrr_status="APPROVED", inventory_status="READY_FOR_ISSUE",
        inventory_check_results=[{"item_id": 1, "required_quantity": 1, "available_stock": 5,
                                  "status": "AVAILABLE", "material_id": 2}],
    )
    assert workflow.admissible_actions(1) == []

    report = workflow.check_inventory(1)
    assert report.inventory_status == InventoryRollup.READY_FOR_ISSUE
    assert workflow.admissible_actions(1) == [MrrAction.MARK_PROCESSING]

    api_client.list_mrrs.return_value = [_mrr(MrrStatus.PROCESSING)]
    workflow.mark_processing(1, "Picking started")
    api_client.update_mrr_status.assert_called_once_with(1, MrrStatus.PROCESSING, notes="Picking started")


def test_check_adopts_status_moved_by_resolver(api_client):
    workflow = _workflow(api_client, MrrStatus.APPROVED)
    api_client.check_inventory.return_value = InventoryCheckResponse(
        mrr_id=1, mrr_status="PROCESSING", inventory_status="READY_FOR_ISSUE", message="All available",
    )
    api_client.list_mrrs.return_value = [_mrr(MrrStatus.PROCESSING)]

    workflow.check_inventory(1)

    assert workflow.cached(1).status == MrrStatus.PROCESSING
    record = workflow.history[-1]
    assert (record.from_status, record.to_status, record.action) == (MrrStatus.APPROVED, MrrStatus.PROCESSING, "INVENTORY_CHECK")


def test_check_recorded_even_if_material_refresh_fails(api_client):
    workflow = _workflow(api_client, MrrStatus.APPROVED)
    api_client.check_inventory.return_value = InventoryCheckResponse(
        mrr_id=1, mrr_status="PROCESSING", inventory_status="READY_FOR_ISSUE",
        inventory_check_results=[{"item_id": 1, "required_quantity": 1, "available_stock": 5,
                                  "status": "AVAILABLE", "material_id": 2}],
    )
    api_client.list_inventory.side_effect = TransportError("Inventory service unavailable")
    api_client.list_mrrs.return_value = [_mrr(MrrStatus.PROCESSING)]

    report = workflow.check_inventory(1)

    assert report.is_ready
    assert workflow.history[-1].action == "INVENTORY_CHECK"
    api_client.list_mrrs.assert_called_once_with(all_pages=True)
    assert workflow.cached(1).status == MrrStatus.PROCESSING


def test_force_status_is_audited(api_client):
    workflow = _workflow(api_client, MrrStatus.PROCESSING)
    api_client.list_mrrs.return_value = [_mrr(MrrStatus.COMPLETED)]

    workflow.force_status(1, MrrStatus.COMPLETED, "Delivered outside the system")

    api_client.update_mrr_status.assert_called_once_with(1, MrrStatus.COMPLETED, notes="Delivered outside the system")
    record = workflow.history[-1]
    assert record.forced
    assert record.action == "FORCE"


def test_force_status_without_note_makes_no_call(api_client):
    workflow = _workflow(api_client, MrrStatus.PROCESSING)
    with pytest.raises(ValidationError):
        workflow.force_status(1, MrrStatus.COMPLETED, "")
    api_client.update_mrr_status.assert_not_called()


def test_uncached_mrr_is_fetched(api_client):
    workflow = MrrWorkflow(api_client)
    api_client.get_mrr.return_value = _mrr(MrrStatus.DRAFT, mrr_id=5)
    api_client.list_mrrs.return_value = []
    workflow.submit(5)
    api_client.get_mrr.assert_called_with(5)
    api_client.submit_mrr.assert_called_once_with(5)


# --- Draft editing ---

def test_create_requires_items(api_client):
    workflow = MrrWorkflow(api_client)
    with pytest.raises(ValidationError):
        workflow.create(MrrDraft(project_id=3))
    api_client.create_mrr.assert_not_called()


def test_create_requires_unit_per_item(api_client):
    workflow = MrrWorkflow(api_client)
    draft = MrrDraft(project_id=3, items=[
        MrrItem(item_id=1, quantity_requested=2, unit_id=4),
        MrrItem(item_id=2, quantity_requested=1),
    ])
    with pytest.raises(ValidationError) as excinfo:
        workflow.create(draft)
    assert [(e.field, e.row) for e in excinfo.value.errors] == [("unit_id", 2)]
    api_client.create_mrr.assert_not_called()


def test_create_reloads(api_client):
    workflow = MrrWorkflow(api_client, RoleAuthorizer("On-Site Engineers"))
    api_client.create_mrr.return_value = _mrr(MrrStatus.DRAFT)
    api_client.list_mrrs.return_value = [_mrr(MrrStatus.DRAFT)]
    created = workflow.create(MrrDraft(project_id=3, items=[MrrItem(item_id=1, quantity_requested=2, unit_id=1)]))
    assert created.mrr_id == 1
    assert len(workflow.mrrs) == 1


def test_item_edits_only_on_drafts(api_client):
    workflow = _workflow(api_client, MrrStatus.SUBMITTED)
    with pytest.raises(InvalidTransitionError):
        workflow.add_item(1, MrrItem(item_id=1, quantity_requested=1))
    with pytest.raises(InvalidTransitionError):
        workflow.delete(1)
    api_client.add_mrr_item.assert_not_called()
    api_client.delete_mrr.assert_not_called()


def test_item_edit_returns_recomputed_total(api_client):
    workflow = _workflow(api_client, MrrStatus.DRAFT)
    api_client.list_mrrs.return_value = [_mrr(MrrStatus.DRAFT, items=[
        MrrItem(mrr_item_id=1, item_id=1, quantity_requested=4, estimated_cost_per_unit=2.5),
        MrrItem(mrr_item_id=2, item_id=2, quantity_requested=1, estimated_cost_per_unit=10),
    ])]
    updated = workflow.update_item(1, 1, {"quantity_requested": 4})
    api_client.update_mrr_item.assert_called_once_with(1, 1, {"quantity_requested": 4})
    assert updated.total_estimated_cost == 20.0


def test_remembered_filters(api_client):
    api_client.list_mrrs.return_value = []
    workflow = MrrWorkflow(api_client)
    workflow.reload(status=MrrStatus.APPROVED, project_id=None)
    workflow.reload()
    assert api_client.list_mrrs.call_args_list[-1].kwargs == {"all_pages": True, "status": MrrStatus.APPROVED}


# --- Issuing ---

def test_issue_form_refused_before_approval(api_client):
    workflow = _workflow(api_client, MrrStatus.SUBMITTED)
    with pytest.raises(InvalidTransitionError):
        workflow.issue_form(1)
    api_client.check_inventory.assert_not_called()


def test_issue_form_refreshes_without_check_capability(api_client):
    workflow = _workflow(api_client, MrrStatus.APPROVED, RoleAuthorizer("Project On-site Team"))
    api_client.check_inventory.return_value = InventoryCheckResponse(
        mrr_id=1, mrr_status="APPROVED", inventory_status="INSUFFICIENT_STOCK",
        inventory_check_results=[{"item_id": 1, "required_quantity": 20, "available_stock": 15,
                                  "status": "INSUFFICIENT_STOCK", "material_id": 2}],
    )
    with pytest.raises(PermissionDeniedError):
        workflow.check_inventory(1)

    form = workflow.issue_form(1, issued_by_user_id=4)
    api_client.check_inventory.assert_called_once_with(1, auto_create_materials=False)
    assert [(r.material_id, r.quantity) for r in form.rows] == [(2, 15)]
