import json
import pytest
import requests
from unittest.mock import MagicMock

from mrr_workflow.api_client import ApiClient
from mrr_workflow.errors import InvalidTransitionError
from mrr_workflow.issues import IssueSubmitter
from mrr_workflow.models import InventoryCheckSummary, InventoryRollup, LineStatus, MrrAction, MrrStatus
from mrr_workflow.permissions import RoleAuthorizer
from mrr_workflow.schemas import MrrDraft, MrrItem
from mrr_workflow.workflow import MrrWorkflow

BASE_URL = "http://fake-api.local/api"

CEMENT = 1 # item A, stocked
GLASS = 2 # item B, never stocked


def make_response(status_code, body):
    response = requests.Response()
    response.status_code = status_code
    response.url = BASE_URL
    response._content = json.dumps(body).encode()
    return response


class FakeBackend:
    """In-memory stand-in for the REST API, including its inventory resolver."""

    def __init__(self):
        self.item_names = {CEMENT: "Portland Cement", GLASS: "Tempered Glass"}
        self.materials = {
            101: {"material_id": 101, "name": "Portland Cement", "item_id": CEMENT, "stock_qty": 25,
                  "project_id": 3, "warehouse_id": 1, "warehouse": {"warehouse_id": 1, "warehouse_name": "Main Store"}},
        }
        self.mrrs = {}
        self.issues = []
        self.calls = []

    def request(self, method, url, params=None, json=None, timeout=None):
        path = url[len(BASE_URL):].strip("/").split("/")
        self.calls.append((method, "/".join(path)))
        params = params or {}

        if path == ["mrrs"] and method == "POST":
            return self._create_mrr(json)
        if path == ["mrrs"] and method == "GET":
            rows = [m for m in self.mrrs.values() if "status" not in params or m["status"] == params["status"]]
            return make_response(200, {"mrrs": rows, "pagination": {"totalPages": 1}})
        if path[0] == "mrrs":
            mrr = self.mrrs.get(int(path[1]))
            if mrr is None:
                return make_response(404, {"message": "MRR not found"})
            action = path[2] if len(path) > 2 else None
            if action is None and method == "GET":
                return make_response(200, {"mrr": mrr})
            if action == "submit":
                if mrr["status"] != "DRAFT":
                    return make_response(400, {"message": "Only draft MRRs can be submitted"})
                mrr["status"] = "SUBMITTED"
                return make_response(200, {"message": "submitted", "mrr": mrr})
            if action == "approve":
                mrr["status"] = "APPROVED" if json["action"] == "approve" else "REJECTED"
                mrr["rejection_reason"] = json.get("rejection_reason")
                return make_response(200, {"message": "done", "mrr": mrr})
            if action == "status":
                mrr["status"] = json["status"]
                return make_response(200, {"mrr": {"mrr_id": mrr["mrr_id"], "status": mrr["status"]}})
            if action == "check-inventory":
                return self._check(mrr, json.get("auto_create_materials", False))
        if path == ["inventory"]:
            rows = [m for m in self.materials.values()
                    if "item_id" not in params or m["item_id"] == params["item_id"]]
            return make_response(200, {"materials": rows, "pagination": {"totalPages": 1}})
        if path == ["material-issues"] and method == "POST":
            return self._issue(json)
        if path == ["material-issues"]:
            return make_response(200, {"issues": self.issues})
        return make_response(404, {"message": f"No route for {method} {url}"})

    def _create_mrr(self, body):
        mrr_id = len(self.mrrs) + 1
        items = []
        for n, item in enumerate(body["items"], start=1):
            items.append({**item, "mrr_item_id": mrr_id * 100 + n,
                          "item": {"item_id": item["item_id"], "item_name": self.item_names[item["item_id"]]}})
        mrr = {**body, "mrr_id": mrr_id, "mrr_number": f"MRR-2026-{mrr_id:04d}", "status": "DRAFT", "items": items}
        self.mrrs[mrr_id] = mrr
        return make_response(201, {"mrr": mrr})

    def _check(self, mrr, auto_create):
        results = []
        for item in mrr["items"]:
            material = next((m for m in self.materials.values() if m["item_id"] == item["item_id"]), None)
            required = item["quantity_requested"]
            if material is None and auto_create:
                material_id = max(self.materials) + 1
                material = {"material_id": material_id, "name": self.item_names[item["item_id"]],
                            "item_id": item["item_id"], "stock_qty": 0, "project_id": mrr["project_id"]}
                self.materials[material_id] = material
                status = "CREATED_NO_STOCK"
            elif material is None:
                status = "NOT_IN_INVENTORY"
            elif material["stock_qty"] >= required:
                status = "AVAILABLE"
            else:
                status = "INSUFFICIENT_STOCK"
            results.append({
                "mrr_item_id": item["mrr_item_id"], "item_id": item["item_id"],
                "item_name": self.item_names[item["item_id"]], "required_quantity": required,
                "available_stock": material["stock_qty"] if material else 0, "status": status,
                "material_id": material["material_id"] if material else None,
                "warehouse": material.get("warehouse") if material else None,
            })

        statuses = [r["status"] for r in results]
        if all(s == "AVAILABLE" for s in statuses):
            rollup = "READY_FOR_ISSUE"
            if mrr["status"] == "APPROVED":
                mrr["status"] = "PROCESSING"
        elif any(s in ("NOT_IN_INVENTORY", "CREATED_NO_STOCK") for s in statuses):
            rollup = "NEEDS_PURCHASE"
        else:
            rollup = "INSUFFICIENT_STOCK"
        return make_response(200, {
            "mrr_id": mrr["mrr_id"], "mrr_status": mrr["status"], "inventory_status": rollup,
            "inventory_check_results": results,
            "materials_created": statuses.count("CREATED_NO_STOCK"),
            "all_materials_available": rollup == "READY_FOR_ISSUE",
            "summary": {
                "total_items": len(results),
                "available_items": statuses.count("AVAILABLE"),
                "insufficient_stock_items": statuses.count("INSUFFICIENT_STOCK"),
                "not_in_inventory_items": statuses.count("NOT_IN_INVENTORY"),
                "created_items": statuses.count("CREATED_NO_STOCK"),
            },
        })

    def _issue(self, body):
        material = self.materials.get(body["material_id"])
        if material is None or material["stock_qty"] < body["quantity_issued"]:
            return make_response(400, {"message": "Insufficient stock"})
        material["stock_qty"] -= body["quantity_issued"]
        record = {**body, "issue_id": len(self.issues) + 1, "status": "ISSUED"}
        self.issues.append(record)
        return make_response(201, {"materialIssue": record})


@pytest.fixture
def backend(monkeypatch):
    fake = FakeBackend()
    mock_session_class = MagicMock(name="MockSessionClass")
    mock_session_class.return_value.headers = {}
    mock_session_class.return_value.request.side_effect = fake.request
    monkeypatch.setattr('mrr_workflow.api_client.requests.Session', mock_session_class)
    return fake


@pytest.fixture
def api_client(backend):
    return ApiClient(BASE_URL, "token")


def _create_and_approve(workflow, items):
    created = workflow.create(MrrDraft(project_id=3, items=items))
    workflow.submit(created.mrr_id)
    return workflow.approve(created.mrr_id, "Looks right")


def test_needs_purchase_offers_only_stocked_item(backend, api_client):
    workflow = MrrWorkflow(api_client, RoleAuthorizer("Admin"))
    mrr = _create_and_approve(workflow, [
        MrrItem(item_id=CEMENT, unit_id=1, quantity_requested=10, estimated_cost_per_unit=8),
        MrrItem(item_id=GLASS, unit_id=1, quantity_requested=4, estimated_cost_per_unit=120),
    ])
    assert mrr.status == MrrStatus.APPROVED
    assert mrr.total_estimated_cost == 560

    report = workflow.check_inventory(mrr.mrr_id, auto_create_materials=False)

    assert report.inventory_status == InventoryRollup.NEEDS_PURCHASE
    assert report.consistent
    assert report.summary.available_items == 1
    assert report.summary.not_in_inventory_items == 1
    assert MrrAction.MARK_PROCESSING not in workflow.admissible_actions(mrr.mrr_id)

    form = workflow.issue_form(mrr.mrr_id, issued_by_user_id=5)
    assert [(row.item_id, row.material_id, row.quantity) for row in form.rows] == [(CEMENT, 101, 10)]

    result = IssueSubmitter(api_client).submit(form)
    assert result.all_succeeded
    assert backend.materials[101]["stock_qty"] == 15
    assert len(result.records) == 1
    assert result.records[0].mrr_id == mrr.mrr_id
    assert [r.action for r in workflow.history] == ["SUBMIT", "APPROVE"]


def test_auto_create_materials_are_not_issuable(backend, api_client):
    workflow = MrrWorkflow(api_client)
    mrr = _create_and_approve(workflow, [
        MrrItem(item_id=CEMENT, unit_id=1, quantity_requested=30),
        MrrItem(item_id=GLASS, unit_id=1, quantity_requested=2),
    ])

    report = workflow.check_inventory(mrr.mrr_id, auto_create_materials=True)

    assert report.summary == InventoryCheckSummary(
        total_items=2, available_items=0, insufficient_stock_items=1, not_in_inventory_items=0, created_items=1,
    )
    assert report.inventory_status == InventoryRollup.NEEDS_PURCHASE
    glass_line = next(line for line in report.lines if line.item_id == GLASS)
    assert glass_line.status == LineStatus.CREATED_NO_STOCK
    # The created zero-stock material was pulled into the cache by the scoped refresh
    assert any(m.resolved_item_id == GLASS for m in workflow.inventory.materials.values())

    form = workflow.issue_form(mrr.mrr_id, issued_by_user_id=5)
    # Cement is short (25 of 30) so at most the stock on hand is offered
    assert [(row.item_id, row.quantity) for row in form.rows] == [(CEMENT, 25)]


def test_fully_available_request_moves_to_processing(backend, api_client):
    workflow = MrrWorkflow(api_client)
    mrr = _create_and_approve(workflow, [MrrItem(item_id=CEMENT, unit_id=1, quantity_requested=5)])

    report = workflow.check_inventory(mrr.mrr_id)

    assert report.is_ready
    assert report.mrr_status == MrrStatus.PROCESSING
    assert workflow.cached(mrr.mrr_id).status == MrrStatus.PROCESSING
    assert workflow.history[-1].action == "INVENTORY_CHECK"


def test_inadmissible_action_never_reaches_server(backend, api_client):
    workflow = MrrWorkflow(api_client)
    created = workflow.create(MrrDraft(project_id=3, items=[MrrItem(item_id=CEMENT, unit_id=1, quantity_requested=1)]))
    calls_before = list(backend.calls)

    with pytest.raises(InvalidTransitionError):
        workflow.mark_processing(created.mrr_id)
    with pytest.raises(InvalidTransitionError):
        workflow.approve(created.mrr_id)

    assert backend.calls == calls_before
