from __future__ import annotations

import uuid
from dataclasses import dataclass

import pytest

from leadflow.platform.security import (
    AdminRole,
    AuthorizationError,
    CustomRole,
    MarketingRole,
    Operation,
    Permission,
    Principal,
    SalesRole,
    authorize,
    require,
    role_from_name,
    visible_to_all,
)
from leadflow.platform.security.policies import ASSIGNMENT_FIELD, NOT_ASSIGNED, UNAUTHORIZED


@dataclass
class StubLead:
    assigned_to_id: uuid.UUID | None


def _principal(role) -> Principal:
    return Principal(user_id=uuid.uuid4(), role=role, name="Tester")


def test_missing_principal_is_denied_for_every_operation() -> None:
    for operation in Operation:
        decision = authorize(None, operation)
        assert not decision.allowed
        assert decision.reason == UNAUTHORIZED


def test_admin_may_do_everything() -> None:
    admin = _principal(AdminRole())
    lead = StubLead(assigned_to_id=uuid.uuid4())
    for operation in Operation:
        decision = authorize(admin, operation, lead)
        assert decision.allowed
        assert decision.can_write(ASSIGNMENT_FIELD)


@pytest.mark.parametrize(
    ("operation", "reason"),
    [
        (Operation.UPDATE, "Unauthorized: Marketing users cannot edit leads"),
        (Operation.UPDATE_STATUS, "Unauthorized: Marketing users cannot change lead status"),
        (Operation.ADD_NOTE, "Unauthorized: Marketing users cannot add notes"),
        (Operation.ADD_ACTION, "Unauthorized: Marketing users cannot add actions"),
    ],
)
def test_marketing_cannot_touch_lead_content(operation: Operation, reason: str) -> None:
    marketing = _principal(MarketingRole())
    decision = authorize(marketing, operation, StubLead(assigned_to_id=marketing.user_id))
    assert not decision.allowed
    assert decision.reason == reason


def test_marketing_creates_transfers_and_bulk_assigns() -> None:
    marketing = _principal(MarketingRole())
    for operation in (Operation.CREATE, Operation.TRANSFER, Operation.BULK_ASSIGN, Operation.STAR, Operation.VIEW):
        assert authorize(marketing, operation).allowed
    for operation in (Operation.SOFT_DELETE, Operation.RESTORE, Operation.PERMANENT_DELETE, Operation.BULK_SOFT_DELETE):
        assert not authorize(marketing, operation).allowed


def test_sales_limited_to_assigned_leads() -> None:
    sales = _principal(SalesRole())
    mine = StubLead(assigned_to_id=sales.user_id)
    theirs = StubLead(assigned_to_id=uuid.uuid4())

    decision = authorize(sales, Operation.UPDATE, mine)
    assert decision.allowed
    assert not decision.can_write(ASSIGNMENT_FIELD)

    denied = authorize(sales, Operation.UPDATE_STATUS, theirs)
    assert not denied.allowed
    assert denied.reason == NOT_ASSIGNED
    assert not authorize(sales, Operation.ADD_NOTE, StubLead(assigned_to_id=None)).allowed


def test_sales_never_deletes_or_assigns() -> None:
    sales = _principal(SalesRole())
    mine = StubLead(assigned_to_id=sales.user_id)
    for operation in (
        Operation.SOFT_DELETE,
        Operation.RESTORE,
        Operation.PERMANENT_DELETE,
        Operation.BULK_SOFT_DELETE,
        Operation.BULK_ASSIGN,
        Operation.TRANSFER,
        Operation.CREATE,
    ):
        assert not authorize(sales, operation, mine).allowed


def test_sales_listing_and_bulk_status_are_scoped() -> None:
    sales = _principal(SalesRole())
    assert authorize(sales, Operation.VIEW).assigned_only
    assert authorize(sales, Operation.BULK_UPDATE_STATUS).assigned_only
    assert not visible_to_all(sales)
    assert visible_to_all(_principal(MarketingRole()))


def test_custom_role_follows_its_grants() -> None:
    role = CustomRole(
        name="Team Lead",
        permissions=frozenset({Permission.LEADS_VIEW_ALL, Permission.LEADS_EDIT, Permission.LEADS_EDIT_ALL}),
    )
    lead_manager = _principal(role)
    other = StubLead(assigned_to_id=uuid.uuid4())

    assert authorize(lead_manager, Operation.VIEW, other).allowed
    update = authorize(lead_manager, Operation.UPDATE, other)
    assert update.allowed
    assert not update.can_write(ASSIGNMENT_FIELD)
    assert not authorize(lead_manager, Operation.UPDATE_STATUS, other).allowed
    assert not authorize(lead_manager, Operation.SOFT_DELETE, other).allowed


def test_custom_role_without_edit_all_is_assignment_scoped() -> None:
    agent = _principal(CustomRole(name="Junior", permissions=frozenset({Permission.LEADS_NOTES})))
    assert authorize(agent, Operation.ADD_NOTE, StubLead(assigned_to_id=agent.user_id)).allowed
    denied = authorize(agent, Operation.ADD_NOTE, StubLead(assigned_to_id=uuid.uuid4()))
    assert denied.reason == NOT_ASSIGNED


def test_role_from_name_resolves_custom_grants() -> None:
    assert isinstance(role_from_name("admin"), AdminRole)
    assert isinstance(role_from_name(" Sales "), SalesRole)

    role = role_from_name("Closer", {"Closer": ["leads.status", "leads.bogus"]})
    assert isinstance(role, CustomRole)
    assert role.permissions == frozenset({Permission.LEADS_STATUS})


def test_require_raises_with_reason() -> None:
    marketing = _principal(MarketingRole())
    with pytest.raises(AuthorizationError) as excinfo:
        require(marketing, Operation.ADD_NOTE)
    assert excinfo.value.reason == "Unauthorized: Marketing users cannot add notes"
