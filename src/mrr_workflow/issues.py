# Module: src/mrr_workflow/issues.py
# Description: Validation and concurrent submission of material issue forms.

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from .config import DEFAULT_ISSUE_LOCATION, DEFAULT_MAX_PARALLEL_ISSUES
from .errors import ConflictError, FieldError, ValidationError, WorkflowError
from .models import (
    BatchIssueResult,
    IssueFailed,
    IssueForm,
    IssueHeader,
    IssueLine,
    IssueOutcome,
    IssueSucceeded,
)
from .permissions import Authorizer, Capability

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class CancelToken:
    """Set from any thread to stop lines that have not been sent yet."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _validate_header(header: IssueHeader) -> List[FieldError]:
    errors = []
    if not header.project_id:
        errors.append(FieldError("project_id", "Please select a project."))
    if header.is_mrr_based and not header.mrr_id:
        errors.append(FieldError("mrr_id", "Please select an MRR for an MRR-based issue."))
    if header.issued_by_user_id is None:
        errors.append(FieldError("issued_by_user_id", "The issuing user is required."))
    return errors


def validate_issue_form(form: IssueForm) -> List[IssueLine]:
    """
    Turns an issue form into submittable lines.

    Rows with neither a material nor a quantity are dropped silently. A row
    with only one of the two gets its own message naming what is missing.

    Raises:
        ValidationError: with one FieldError per problem; nothing has been sent.
    """
    header_errors = _validate_header(form.header)
    if header_errors:
        raise ValidationError("Please complete the issue details", header_errors)

    lines: List[IssueLine] = []
    row_errors: List[FieldError] = []
    for index, row in enumerate(form.rows, start=1):
        if row.is_untouched:
            continue
        if not row.has_material:
            row_errors.append(FieldError("material_id", "Please select a material.", row=index))
        elif not row.has_quantity:
            row_errors.append(FieldError("quantity", "Please enter a quantity greater than zero.", row=index))
        else:
            lines.append(IssueLine(
                material_id=row.material_id,
                quantity=row.quantity,
                warehouse_id=row.warehouse_id,
                item_name=row.item_name,
                mrr_item_id=row.mrr_item_id,
                item_id=row.item_id,
                row=index,
            ))

    if row_errors:
        raise ValidationError("Some material rows are incomplete", row_errors)
    if not lines:
        raise ValidationError(
            "Please add at least one material item",
            [FieldError("rows", "Please add at least one material item.")],
        )
    return lines


def build_issue_payload(header: IssueHeader, line: IssueLine, location: str = DEFAULT_ISSUE_LOCATION) -> Dict[str, Any]:
    """Request body of POST /material-issues for a single line."""
    payload: Dict[str, Any] = {
        "project_id": header.project_id,
        "material_id": line.material_id,
        "quantity_issued": line.quantity,
        "issue_date": header.issue_date.isoformat(),
        "issue_purpose": header.purpose,
        "location": location,
        "issued_by_user_id": header.issued_by_user_id,
        # The receiver defaults to the issuer, as on the site issue screen
        "received_by_user_id": (header.received_by_user_id if header.received_by_user_id is not None
                                else header.issued_by_user_id),
        "is_for_mrr": header.is_mrr_based,
        "component_id": header.component_id,
        "subcontractor_id": header.subcontractor_id,
        "warehouse_id": line.warehouse_id,
    }
    if header.is_mrr_based:
        payload["mrr_id"] = header.mrr_id
    return payload


class IssueSubmitter:
    """
    Sends one create call per validated line, in parallel, and reports each line's outcome.

    A failure of one line never hides the result of the others; failed lines can
    be resubmitted with retry_failed().
    """

    def __init__(self, api_client, location: str = DEFAULT_ISSUE_LOCATION,
                 max_workers: int = DEFAULT_MAX_PARALLEL_ISSUES,
                 authorizer: Optional[Authorizer] = None):
        self.api_client = api_client
        self.location = location
        self.max_workers = max(1, max_workers)
        self.authorizer = authorizer
        self._lock = threading.Lock()
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._in_flight

    def submit(self, form: IssueForm, cancel_token: Optional[CancelToken] = None) -> BatchIssueResult:
        if self.authorizer is not None:
            self.authorizer.require(Capability.ISSUE_MATERIAL, "issue material")
        lines = validate_issue_form(form)
        logger.info(f"Submitting {len(lines)} material issue line(s) for project {form.header.project_id}")
        outcomes = self._run(form.header, lines, cancel_token)
        return self._finish(form.header, outcomes)

    def retry_failed(self, result: BatchIssueResult, cancel_token: Optional[CancelToken] = None) -> BatchIssueResult:
        """
        Resubmits exactly the failed lines of `result`.

        The returned result holds the earlier successes and the new outcomes, in the
        original line order.
        """
        failed = result.failed_lines
        if not failed:
            logger.info("Nothing to retry, every line already succeeded")
            return result
        if self.authorizer is not None:
            self.authorizer.require(Capability.ISSUE_MATERIAL, "issue material")
        logger.info(f"Retrying {len(failed)} failed material issue line(s)")
        retried = iter(self._run(result.header, failed, cancel_token))
        merged = [o if o.ok else next(retried) for o in result.outcomes]
        return self._finish(result.header, merged)

    def _run(self, header: IssueHeader, lines: List[IssueLine],
             cancel_token: Optional[CancelToken]) -> List[IssueOutcome]:
        with self._lock:
            if self._in_flight:
                raise ConflictError("A material issue submission is already in progress.")
            self._in_flight = True
        try:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(lines))) as pool:
                futures = [pool.submit(self._submit_line, header, line, cancel_token) for line in lines]
                return [f.result() for f in futures]
        finally:
            with self._lock:
                self._in_flight = False

    def _submit_line(self, header: IssueHeader, line: IssueLine,
                     cancel_token: Optional[CancelToken]) -> IssueOutcome:
        if cancel_token is not None and cancel_token.cancelled:
            logger.debug(f"Row {line.row}: skipped, submission cancelled")
            return IssueFailed(line=line, reason=CANCELLED_REASON)
        try:
            record = self.api_client.create_material_issue(build_issue_payload(header, line, self.location))
        except WorkflowError as e:
            logger.warning(f"Row {line.row}: issue of material {line.material_id} failed: {e.message}")
            return IssueFailed(line=line, reason=e.message, error=e)
        logger.debug(f"Row {line.row}: material {line.material_id} issued ({line.quantity})")
        return IssueSucceeded(line=line, issue_id=record.get("issue_id"), record=record)

    def _finish(self, header: IssueHeader, outcomes: List[IssueOutcome]) -> BatchIssueResult:
        result = BatchIssueResult(header=header, outcomes=outcomes)
        if result.succeeded:
            try:
                result.records = self.api_client.list_material_issues(project_id=header.project_id, all_pages=True)
            except WorkflowError as e:
                # The creates already happened; report them even if the reload did not
                logger.warning(f"Could not reload material issues after submission: {e.message}")
        if result.all_succeeded:
            logger.info(f"All {len(outcomes)} material issue line(s) succeeded")
        else:
            logger.warning(f"{len(result.failed)} of {len(outcomes)} material issue line(s) failed")
        return result
