# Module: src/mrr_workflow/permissions.py
# Description: Role normalization and the role -> capability table consulted by the workflow.

import logging
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet

from .errors import PermissionDeniedError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "Admin"
    PROJECT_MANAGER = "Project Manager"
    PROJECT_ONSITE_TEAM = "Project On-site Team"
    ON_SITE_ENGINEER = "On-Site Engineers"
    STORE_MANAGER = "Store Manager"
    STORE_INCHARGE = "Store Incharge"
    INVENTORY_MANAGER = "Inventory Manager"
    PURCHASE_MANAGER_HO = "Purchase Manager HO"
    ACCOUNTANT = "Accountant"
    ACCOUNTANT_HEAD = "Accountant Head"
    ENGINEER_HO = "Engineer HO"
    UNKNOWN = "Unknown"


class Capability(str, Enum):
    CREATE_MRR = "create_mrr"
    APPROVE_MRR = "approve_mrr"
    CHANGE_MRR_STATUS = "change_mrr_status"
    CHECK_INVENTORY = "check_inventory"
    ISSUE_MATERIAL = "issue_material"
    TRANSFER_MATERIAL = "transfer_material"
    RETURN_MATERIAL = "return_material"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.PROJECT_MANAGER: frozenset({
        Capability.CREATE_MRR, Capability.APPROVE_MRR, Capability.CHANGE_MRR_STATUS,
        Capability.CHECK_INVENTORY, Capability.ISSUE_MATERIAL,
        Capability.TRANSFER_MATERIAL, Capability.RETURN_MATERIAL,
    }),
    Role.INVENTORY_MANAGER: frozenset({
        Capability.CHANGE_MRR_STATUS, Capability.ISSUE_MATERIAL,
        Capability.TRANSFER_MATERIAL, Capability.RETURN_MATERIAL,
    }),
    Role.ENGINEER_HO: frozenset({
        Capability.CREATE_MRR, Capability.APPROVE_MRR, Capability.ISSUE_MATERIAL,
    }),
    Role.PROJECT_ONSITE_TEAM: frozenset({
        Capability.CREATE_MRR, Capability.ISSUE_MATERIAL, Capability.RETURN_MATERIAL,
    }),
    Role.ON_SITE_ENGINEER: frozenset({Capability.CREATE_MRR}),
    Role.STORE_MANAGER: frozenset({Capability.CHECK_INVENTORY, Capability.ISSUE_MATERIAL}),
    Role.STORE_INCHARGE: frozenset({Capability.CHECK_INVENTORY}),
    Role.PURCHASE_MANAGER_HO: frozenset(),
    Role.ACCOUNTANT: frozenset(),
    Role.ACCOUNTANT_HEAD: frozenset(),
    Role.UNKNOWN: frozenset(),
}

_ROLES_BY_NAME = {role.value.casefold(): role for role in Role}


def normalize_role(raw: Any) -> Role:
    """
    Converts whatever the auth layer hands us into a Role.

    Accepts a Role, a role name string, a mapping with a 'name' key, or an
    object with a 'name' attribute. Anything unrecognised becomes Role.UNKNOWN.
    """
    if isinstance(raw, Role):
        return raw
    name = None
    if isinstance(raw, str):
        name = raw
    elif isinstance(raw, dict):
        name = raw.get("name")
    elif raw is not None:
        name = getattr(raw, "name", None)

    if not isinstance(name, str) or not name.strip():
        return Role.UNKNOWN
    role = _ROLES_BY_NAME.get(name.strip().casefold())
    if role is None:
        logger.warning(f"Unrecognised role '{name}', treating as {Role.UNKNOWN.value}")
        return Role.UNKNOWN
    return role


class Authorizer:
    """Answers 'is this action permitted' for the acting user."""

    def is_permitted(self, capability: Capability) -> bool:
        raise NotImplementedError

    def require(self, capability: Capability, action: str) -> None:
        if not self.is_permitted(capability):
            logger.warning(f"Permission denied for '{action}' (needs {capability.value})")
            raise PermissionDeniedError(f"You are not permitted to {action}.")


class RoleAuthorizer(Authorizer):
    def __init__(self, role: Any):
        self.role = normalize_role(role)

    def is_permitted(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())


class CallableAuthorizer(Authorizer):
    """Delegates the decision to an external predicate."""

    def __init__(self, predicate: Callable[[Capability], bool]):
        self.predicate = predicate

    def is_permitted(self, capability: Capability) -> bool:
        return bool(self.predicate(capability))
