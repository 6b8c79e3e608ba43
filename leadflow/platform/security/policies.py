from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol, assert_never

from leadflow.platform.security.context import (
    AdminRole,
    CustomRole,
    MarketingRole,
    Permission,
    Principal,
    SalesRole,
)
from leadflow.platform.security.errors import AuthorizationError


UNAUTHORIZED = "Unauthorized"
NOT_ASSIGNED = "Unauthorized: Not assigned to you"
ASSIGNMENT_FIELD = "assigned_to_id"


class Operation(StrEnum):
    VIEW = "view"
    CREATE = "create"
    UPDATE = "update"
    UPDATE_STATUS = "update_status"
    ADD_NOTE = "add_note"
    ADD_ACTION = "add_action"
    TRANSFER = "transfer"
    STAR = "star"
    SOFT_DELETE = "soft_delete"
    RESTORE = "restore"
    PERMANENT_DELETE = "permanent_delete"
    BULK_UPDATE_STATUS = "bulk_update_status"
    BULK_ASSIGN = "bulk_assign"
    BULK_SOFT_DELETE = "bulk_soft_delete"
    IMPORT = "import"
    MANAGE_SETTINGS = "manage_settings"
    READ_AUDIT = "read_audit"
    LIST_ASSIGNEES = "list_assignees"


ADMIN_ONLY = frozenset(
    {
        Operation.SOFT_DELETE,
        Operation.RESTORE,
        Operation.PERMANENT_DELETE,
        Operation.BULK_SOFT_DELETE,
        Operation.IMPORT,
        Operation.MANAGE_SETTINGS,
        Operation.READ_AUDIT,
    }
)

# Operations a principal may only perform on leads assigned to them unless the
# role grants organisation-wide access.
_PER_LEAD = frozenset(
    {
        Operation.UPDATE,
        Operation.UPDATE_STATUS,
        Operation.ADD_NOTE,
        Operation.ADD_ACTION,
    }
)

_MARKETING_DENIALS = {
    Operation.UPDATE: "Unauthorized: Marketing users cannot edit leads",
    Operation.UPDATE_STATUS: "Unauthorized: Marketing users cannot change lead status",
    Operation.BULK_UPDATE_STATUS: "Unauthorized: Marketing users cannot change lead status",
    Operation.ADD_NOTE: "Unauthorized: Marketing users cannot add notes",
    Operation.ADD_ACTION: "Unauthorized: Marketing users cannot add actions",
}

_CUSTOM_GRANTS = {
    Operation.CREATE: Permission.LEADS_CREATE,
    Operation.UPDATE: Permission.LEADS_EDIT,
    Operation.UPDATE_STATUS: Permission.LEADS_STATUS,
    Operation.ADD_NOTE: Permission.LEADS_NOTES,
    Operation.ADD_ACTION: Permission.LEADS_ACTIONS,
    Operation.TRANSFER: Permission.LEADS_TRANSFER,
    Operation.BULK_UPDATE_STATUS: Permission.LEADS_BULK_STATUS,
    Operation.BULK_ASSIGN: Permission.LEADS_BULK_ASSIGN,
    Operation.LIST_ASSIGNEES: Permission.LEADS_ASSIGN,
}


class AssignableLead(Protocol):
    assigned_to_id: uuid.UUID | None


@dataclass(frozen=True, slots=True)
class AccessDecision:
    allowed: bool
    reason: str | None = None
    read_only_fields: frozenset[str] = field(default_factory=frozenset)
    assigned_only: bool = False

    @classmethod
    def allow(cls, *, read_only_fields: frozenset[str] = frozenset(), assigned_only: bool = False) -> AccessDecision:
        return cls(allowed=True, read_only_fields=read_only_fields, assigned_only=assigned_only)

    @classmethod
    def deny(cls, reason: str = UNAUTHORIZED) -> AccessDecision:
        return cls(allowed=False, reason=reason)

    def can_write(self, field_name: str) -> bool:
        return self.allowed and field_name not in self.read_only_fields

    def ensure(self) -> AccessDecision:
        if not self.allowed:
            raise AuthorizationError(self.reason or UNAUTHORIZED)
        return self


def is_assigned_to(principal: Principal, lead: AssignableLead | None) -> bool:
    return lead is not None and lead.assigned_to_id is not None and lead.assigned_to_id == principal.user_id


def authorize(
    principal: Principal | None,
    operation: Operation,
    lead: AssignableLead | None = None,
) -> AccessDecision:
    """Decide whether ``principal`` may perform ``operation`` on ``lead``.

    Pure function: no I/O, no side effects. When ``lead`` is omitted for a
    per-lead operation the decision describes the caller's general standing
    (``assigned_only`` tells list/bulk callers to scope their queries).
    """

    if principal is None:
        return AccessDecision.deny(UNAUTHORIZED)

    role = principal.role
    if isinstance(role, AdminRole):
        return AccessDecision.allow()
    if isinstance(role, MarketingRole):
        return _authorize_marketing(operation)
    if isinstance(role, SalesRole):
        return _authorize_sales(principal, operation, lead)
    if isinstance(role, CustomRole):
        return _authorize_custom(principal, role, operation, lead)
    assert_never(role)


def _authorize_marketing(operation: Operation) -> AccessDecision:
    if operation in _MARKETING_DENIALS:
        return AccessDecision.deny(_MARKETING_DENIALS[operation])
    if operation in ADMIN_ONLY:
        return AccessDecision.deny(UNAUTHORIZED)
    if operation in {
        Operation.VIEW,
        Operation.CREATE,
        Operation.STAR,
        Operation.TRANSFER,
        Operation.BULK_ASSIGN,
        Operation.LIST_ASSIGNEES,
    }:
        return AccessDecision.allow()
    return AccessDecision.deny(UNAUTHORIZED)


def _authorize_sales(principal: Principal, operation: Operation, lead: AssignableLead | None) -> AccessDecision:
    if operation == Operation.STAR:
        return AccessDecision.allow()
    if operation == Operation.VIEW:
        if lead is None:
            return AccessDecision.allow(assigned_only=True)
        return AccessDecision.allow() if is_assigned_to(principal, lead) else AccessDecision.deny(NOT_ASSIGNED)
    if operation in _PER_LEAD:
        if lead is not None and not is_assigned_to(principal, lead):
            return AccessDecision.deny(NOT_ASSIGNED)
        return AccessDecision.allow(read_only_fields=frozenset({ASSIGNMENT_FIELD}), assigned_only=lead is None)
    if operation == Operation.BULK_UPDATE_STATUS:
        return AccessDecision.allow(assigned_only=True)
    return AccessDecision.deny(UNAUTHORIZED)


def _authorize_custom(
    principal: Principal,
    role: CustomRole,
    operation: Operation,
    lead: AssignableLead | None,
) -> AccessDecision:
    if operation in ADMIN_ONLY:
        return AccessDecision.deny(UNAUTHORIZED)

    grants = role.permissions
    org_wide = Permission.LEADS_EDIT_ALL in grants

    if operation == Operation.STAR:
        return AccessDecision.allow()
    if operation == Operation.VIEW:
        if Permission.LEADS_VIEW_ALL in grants:
            return AccessDecision.allow()
        if lead is None:
            return AccessDecision.allow(assigned_only=True)
        return AccessDecision.allow() if is_assigned_to(principal, lead) else AccessDecision.deny(NOT_ASSIGNED)

    required = _CUSTOM_GRANTS.get(operation)
    if required is None or required not in grants:
        return AccessDecision.deny(UNAUTHORIZED)

    if operation in _PER_LEAD:
        if not org_wide and lead is not None and not is_assigned_to(principal, lead):
            return AccessDecision.deny(NOT_ASSIGNED)
        read_only = frozenset() if Permission.LEADS_ASSIGN in grants else frozenset({ASSIGNMENT_FIELD})
        return AccessDecision.allow(read_only_fields=read_only, assigned_only=not org_wide and lead is None)
    if operation == Operation.BULK_UPDATE_STATUS:
        return AccessDecision.allow(assigned_only=not org_wide)
    return AccessDecision.allow()


def visible_to_all(principal: Principal) -> bool:
    return not authorize(principal, Operation.VIEW).assigned_only


def require(principal: Principal | None, operation: Operation, lead: AssignableLead | None = None) -> AccessDecision:
    return authorize(principal, operation, lead).ensure()
