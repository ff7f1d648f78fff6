import logging
from enum import Enum
import requests
from typing import Optional, List, Dict, Any
from requests.exceptions import HTTPError, RequestException, Timeout

from .errors import (
    ConflictError,
    FieldError,
    NotFoundError,
    PermissionDeniedError,
    TransportError,
    ValidationError,
    WorkflowError,
)
from .schemas import (
    InventoryCheckResponse,
    Material,
    MaterialIssueRecord,
    MaterialRequirementRequest,
    MrrDraft,
    MrrItem,
    WarehouseRef,
)

logger = logging.getLogger(__name__)

# Upper bound for page walking
MAX_PAGES = 500


def _clean_params(params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drops unset filters and renders booleans the way the API expects them."""
    cleaned: Dict[str, Any] = {}
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        elif isinstance(value, Enum):
            value = value.value
        cleaned[key] = value
    return cleaned


def extract_error_message(response: Optional[requests.Response], fallback: str) -> str:
    """Pulls a human readable message out of an error response body, else returns `fallback`."""
    if response is None:
        return fallback
    try:
        body = response.json()
    except ValueError:
        return fallback
    if isinstance(body, dict):
        if body.get("message"):
            return str(body["message"])
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            msgs = [str(e.get("msg", e)) if isinstance(e, dict) else str(e) for e in errors]
            return "; ".join(msgs)
        if body.get("detail"):
            return str(body["detail"])
    return fallback


def _field_errors(response: Optional[requests.Response]) -> List[FieldError]:
    try:
        body = response.json() if response is not None else None
    except ValueError:
        return []
    if not isinstance(body, dict) or not isinstance(body.get("errors"), list):
        return []
    field_errors = []
    for err in body["errors"]:
        if isinstance(err, dict):
            field = err.get("path") or err.get("param") or ""
            field_errors.append(FieldError(field=str(field), message=str(err.get("msg", "Invalid value"))))
    return field_errors


def map_http_error(response: Optional[requests.Response], operation: str) -> WorkflowError:
    """Converts an HTTP error response into the matching WorkflowError subclass."""
    status_code = response.status_code if response is not None else None
    message = extract_error_message(response, f"Failed to {operation}")
    if status_code in (400, 422):
        return ValidationError(message, _field_errors(response), status_code=status_code)
    if status_code in (401, 403):
        return PermissionDeniedError(message, status_code=status_code)
    if status_code == 404:
        return NotFoundError(message, status_code=status_code)
    if status_code == 409:
        return ConflictError(message, status_code=status_code)
    if status_code is not None and status_code >= 500:
        return TransportError(message, status_code=status_code)
    return WorkflowError(message, status_code=status_code)


def _extract(body: Any, key: str) -> Any:
    """Finds `key` at the top level or under a 'data' envelope."""
    if isinstance(body, dict):
        if key in body:
            return body[key]
        data = body.get("data")
        if isinstance(data, dict) and key in data:
            return data[key]
    return None


class ApiClient:
    """
    Client to interact with the construction-management REST API.
    """
    def __init__(self, url: str, token: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        """
        Initializes the API client.

        Args:
            url: The base URL of the API.
            token: The bearer token for authentication.
            timeout: Per-request timeout in seconds.
            session: Optional pre-built session (mainly for tests).
        """
        self.base_url = url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
        })

    def _request(self, method: str, path: str, operation: str,
                 params: Optional[Dict[str, Any]] = None, json: Optional[Any] = None) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug(f"{method} {url} params={_clean_params(params)}")
        try:
            response = self.session.request(method, url, params=_clean_params(params), json=json, timeout=self.timeout)
            response.raise_for_status()
        except HTTPError as e:
            error = map_http_error(e.response, operation)
            status_code = e.response.status_code if e.response is not None else 'N/A'
            if isinstance(error, TransportError):
                logger.error(f"API HTTPError while trying to {operation}: Status {status_code}. Detail: {error.message}")
            else:
                logger.warning(f"API rejected request to {operation}: Status {status_code}. Detail: {error.message}")
            raise error from e
        except Timeout as e:
            logger.error(f"API request timed out while trying to {operation}: {e}")
            raise TransportError(f"Timed out while trying to {operation}.") from e
        except RequestException as e:
            logger.error(f"API RequestException while trying to {operation}: {e}")
            raise TransportError(f"Could not reach the server to {operation}: {e}") from e

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Non-JSON response while trying to {operation}: {response.text[:200]}")
            raise TransportError(f"Server returned an unreadable response while trying to {operation}.") from e

    def _get_list(self, path: str, key: str, operation: str, params: Dict[str, Any], all_pages: bool) -> List[Any]:
        body = self._request("GET", path, operation, params=params)
        rows = list(_extract(body, key) or [])
        if not all_pages:
            return rows

        pagination = _extract(body, "pagination") or {}
        total_pages = int(pagination.get("totalPages") or 1)
        page = int(params.get("page") or 1)
        while page < min(total_pages, MAX_PAGES):
            page += 1
            body = self._request("GET", path, operation, params={**params, "page": page})
            rows.extend(_extract(body, key) or [])
        logger.debug(f"Fetched {len(rows)} rows from {path} across {page} page(s)")
        return rows

    # --- Material Requirement Requests ---

    def list_mrrs(self, status=None, project_id: Optional[int] = None, priority=None,
                  search: Optional[str] = None, include_items: bool = True, include_project: bool = True,
                  page: Optional[int] = None, limit: Optional[int] = None,
                  all_pages: bool = False) -> List[MaterialRequirementRequest]:
        params = {
            "status": status, "project_id": project_id, "priority": priority, "search": search,
            "include_items": include_items, "include_project": include_project,
            "page": page, "limit": limit,
        }
        rows = self._get_list("/mrrs", "mrrs", "fetch MRRs", params, all_pages)
        return [MaterialRequirementRequest.model_validate(r) for r in rows]

    def get_mrr(self, mrr_id: int) -> MaterialRequirementRequest:
        body = self._request("GET", f"/mrrs/{mrr_id}", "fetch MRR")
        return MaterialRequirementRequest.model_validate(_extract(body, "mrr") or body)

    def create_mrr(self, draft: MrrDraft) -> MaterialRequirementRequest:
        body = self._request("POST", "/mrrs", "create MRR", json=draft.to_payload())
        return MaterialRequirementRequest.model_validate(_extract(body, "mrr") or body)

    def update_mrr(self, mrr_id: int, fields: Dict[str, Any]) -> MaterialRequirementRequest:
        body = self._request("PUT", f"/mrrs/{mrr_id}", "update MRR", json=fields)
        return MaterialRequirementRequest.model_validate(_extract(body, "mrr") or body)

    def delete_mrr(self, mrr_id: int) -> None:
        self._request("DELETE", f"/mrrs/{mrr_id}", "delete MRR")

    def add_mrr_item(self, mrr_id: int, item: MrrItem) -> MrrItem:
        body = self._request("POST", f"/mrrs/{mrr_id}/items", "add item to MRR", json=item.to_payload())
        return MrrItem.model_validate(_extract(body, "mrrItem") or body)

    def update_mrr_item(self, mrr_id: int, mrr_item_id: int, fields: Dict[str, Any]) -> MrrItem:
        body = self._request("PUT", f"/mrrs/{mrr_id}/items/{mrr_item_id}", "update MRR item", json=fields)
        return MrrItem.model_validate(_extract(body, "mrrItem") or body)

    def delete_mrr_item(self, mrr_id: int, mrr_item_id: int) -> None:
        self._request("DELETE", f"/mrrs/{mrr_id}/items/{mrr_item_id}", "delete MRR item")

    def submit_mrr(self, mrr_id: int) -> Dict[str, Any]:
        return self._request("POST", f"/mrrs/{mrr_id}/submit", "submit MRR")

    def approve_mrr(self, mrr_id: int, action: str, rejection_reason: Optional[str] = None) -> Dict[str, Any]:
        if action not in ("approve", "reject"):
            raise ValueError(f"action must be 'approve' or 'reject', got '{action}'")
        payload: Dict[str, Any] = {"action": action}
        if rejection_reason:
            payload["rejection_reason"] = rejection_reason
        return self._request("POST", f"/mrrs/{mrr_id}/approve", f"{action} MRR", json=payload)

    def update_mrr_status(self, mrr_id: int, status, notes: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": getattr(status, "value", status)}
        if notes:
            payload["notes"] = notes
        return self._request("POST", f"/mrrs/{mrr_id}/status", "update MRR status", json=payload)

    def check_inventory(self, mrr_id: int, auto_create_materials: bool = False) -> InventoryCheckResponse:
        body = self._request(
            "POST", f"/mrrs/{mrr_id}/check-inventory", "check MRR inventory",
            json={"auto_create_materials": bool(auto_create_materials)},
        )
        return InventoryCheckResponse.model_validate(body)

    # --- Inventory ---

    def list_inventory(self, project_id: Optional[int] = None, warehouse_id: Optional[int] = None,
                       category: Optional[str] = None, search: Optional[str] = None,
                       item_id: Optional[int] = None, low_stock: Optional[bool] = None,
                       page: Optional[int] = None, limit: Optional[int] = None,
                       all_pages: bool = False) -> List[Material]:
        params = {
            "project_id": project_id, "warehouse_id": warehouse_id, "category": category,
            "search": search, "item_id": item_id, "low_stock": low_stock,
            "page": page, "limit": limit,
        }
        rows = self._get_list("/inventory", "materials", "fetch inventory", params, all_pages)
        return [Material.model_validate(r) for r in rows]

    def list_low_stock(self, project_id: Optional[int] = None) -> List[Material]:
        body = self._request("GET", "/inventory/low-stock", "fetch low stock materials", params={"project_id": project_id})
        return [Material.model_validate(r) for r in (_extract(body, "lowStockMaterials") or [])]

    def list_warehouses(self) -> List[WarehouseRef]:
        body = self._request("GET", "/warehouses", "fetch warehouses")
        return [WarehouseRef.model_validate(r) for r in (_extract(body, "warehouses") or [])]

    # --- Material issues, transfers and returns ---

    def create_material_issue(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = self._request("POST", "/material-issues", "create material issue", json=payload)
        return _extract(body, "materialIssue") or body

    def list_material_issues(self, project_id: Optional[int] = None, status=None,
                             material_id: Optional[int] = None, mrr_id: Optional[int] = None,
                             include_project: bool = True, include_mrr: bool = True,
                             include_warehouse: bool = True, page: Optional[int] = None,
                             limit: Optional[int] = None, all_pages: bool = False) -> List[MaterialIssueRecord]:
        params = {
            "project_id": project_id, "status": status, "material_id": material_id, "mrr_id": mrr_id,
            "include_project": include_project, "include_mrr": include_mrr,
            "include_warehouse": include_warehouse, "page": page, "limit": limit,
        }
        rows = self._get_list("/material-issues", "issues", "fetch material issues", params, all_pages)
        return [MaterialIssueRecord.model_validate(r) for r in rows]

    def create_site_transfer(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = self._request("POST", "/site-transfers", "create site transfer", json=payload)
        return _extract(body, "siteTransfer") or body

    def create_material_return(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = self._request("POST", "/material-returns", "create material return", json=payload)
        return _extract(body, "materialReturn") or body
