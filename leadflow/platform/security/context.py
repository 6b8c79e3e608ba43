from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum


class Permission(StrEnum):
    LEADS_CREATE = "leads.create"
    LEADS_VIEW_ALL = "leads.view_all"
    LEADS_EDIT = "leads.edit"
    LEADS_EDIT_ALL = "leads.edit_all"
    LEADS_STATUS = "leads.status"
    LEADS_NOTES = "leads.notes"
    LEADS_ACTIONS = "leads.actions"
    LEADS_ASSIGN = "leads.assign"
    LEADS_TRANSFER = "leads.transfer"
    LEADS_BULK_STATUS = "leads.bulk_status"
    LEADS_BULK_ASSIGN = "leads.bulk_assign"


class BuiltinRole(StrEnum):
    ADMIN = "ADMIN"
    MARKETING = "MARKETING"
    SALES = "SALES"


@dataclass(frozen=True, slots=True)
class AdminRole:
    name: str = BuiltinRole.ADMIN.value


@dataclass(frozen=True, slots=True)
class MarketingRole:
    name: str = BuiltinRole.MARKETING.value


@dataclass(frozen=True, slots=True)
class SalesRole:
    name: str = BuiltinRole.SALES.value


@dataclass(frozen=True, slots=True)
class CustomRole:
    """Tenant-defined role; its grants come entirely from ``permissions``."""

    name: str
    permissions: frozenset[Permission] = field(default_factory=frozenset)


Role = AdminRole | MarketingRole | SalesRole | CustomRole


def role_from_name(name: str, custom_permissions: dict[str, list[str]] | None = None) -> Role:
    normalized = name.strip().upper()
    if normalized == BuiltinRole.ADMIN:
        return AdminRole()
    if normalized == BuiltinRole.MARKETING:
        return MarketingRole()
    if normalized == BuiltinRole.SALES:
        return SalesRole()

    grants: set[Permission] = set()
    for raw in (custom_permissions or {}).get(name.strip(), []):
        try:
            grants.add(Permission(raw))
        except ValueError:
            continue
    return CustomRole(name=name.strip(), permissions=frozenset(grants))


@dataclass(slots=True)
class Principal:
    """The authenticated caller supplied by the identity collaborator."""

    user_id: uuid.UUID
    role: Role
    name: str = ""
    correlation_id: str | None = None

    @property
    def role_name(self) -> str:
        return self.role.name

    @property
    def display_name(self) -> str:
        return self.name or "Unknown"
