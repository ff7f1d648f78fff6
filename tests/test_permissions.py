import pytest
from types import SimpleNamespace

from mrr_workflow.errors import PermissionDeniedError
from mrr_workflow.permissions import (
    Capability,
    CallableAuthorizer,
    ROLE_CAPABILITIES,
    Role,
    RoleAuthorizer,
    normalize_role,
)


@pytest.mark.parametrize("raw, expected", [
    (Role.ADMIN, Role.ADMIN),
    ("Admin", Role.ADMIN),
    ("  project manager ", Role.PROJECT_MANAGER),
    ({"name": "Store Manager", "id": 3}, Role.STORE_MANAGER),
    (SimpleNamespace(name="Engineer HO"), Role.ENGINEER_HO),
    ("Chief Wizard", Role.UNKNOWN),
    ({"id": 3}, Role.UNKNOWN),
    (None, Role.UNKNOWN),
    ("", Role.UNKNOWN),
])
def test_normalize_role(raw, expected):
    assert normalize_role(raw) == expected


def test_every_role_has_an_entry():
    assert set(ROLE_CAPABILITIES) == set(Role)


def test_admin_has_everything_and_unknown_nothing():
    admin = RoleAuthorizer("Admin")
    unknown = RoleAuthorizer("nobody")
    for capability in Capability:
        assert admin.is_permitted(capability)
        assert not unknown.is_permitted(capability)


def test_approval_roles():
    approvers = {r for r, caps in ROLE_CAPABILITIES.items() if Capability.APPROVE_MRR in caps}
    assert approvers == {Role.ADMIN, Role.PROJECT_MANAGER, Role.ENGINEER_HO}


def test_require_raises_with_action_text():
    authorizer = RoleAuthorizer({"name": "Store Incharge"})
    authorizer.require(Capability.CHECK_INVENTORY, "check inventory")
    with pytest.raises(PermissionDeniedError) as excinfo:
        authorizer.require(Capability.ISSUE_MATERIAL, "issue material")
    assert str(excinfo.value) == "You are not permitted to issue material."


def test_callable_authorizer_delegates():
    seen = []

    def predicate(capability):
        seen.append(capability)
        return capability == Capability.CREATE_MRR

    authorizer = CallableAuthorizer(predicate)
    assert authorizer.is_permitted(Capability.CREATE_MRR)
    assert not authorizer.is_permitted(Capability.APPROVE_MRR)
    assert seen == [Capability.CREATE_MRR, Capability.APPROVE_MRR]
