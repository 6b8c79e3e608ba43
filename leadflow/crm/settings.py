from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from leadflow.crm.errors import InvalidFieldsError
from leadflow.crm.models import LeadSettings
from leadflow.crm.operations import ActionResult, lead_operation, parse_payload
from leadflow.crm.repositories import DEFAULT_PRODUCTS, DEFAULT_SOURCES, DEFAULT_STATUSES, SettingsRepository
from leadflow.crm.schemas import LeadSettingsRead, LeadSettingsUpdate, UserRead
from leadflow.crm.service import require_loaded
from leadflow.models.user import User
from leadflow.platform.security import BuiltinRole, Operation, Permission, Principal


class LeadSettingsService:
    """Status/source/product vocabularies and custom role grants."""

    def __init__(self, repository: SettingsRepository | None = None) -> None:
        self.repository = repository or SettingsRepository()

    def get_lead_settings(self, session: Session, principal: Principal | None) -> LeadSettingsRead:
        require_loaded(principal, Operation.VIEW)
        return self.repository.load(session)

    @lead_operation("update_lead_settings", "Failed to update settings")
    def update_lead_settings(
        self,
        session: Session,
        principal: Principal | None,
        payload: LeadSettingsUpdate | dict[str, Any],
    ) -> ActionResult:
        require_loaded(principal, Operation.MANAGE_SETTINGS)
        dto = parse_payload(LeadSettingsUpdate, payload)

        if dto.custom_roles:
            known = {permission.value for permission in Permission}
            builtin = {role.value for role in BuiltinRole}
            errors: dict[str, list[str]] = {}
            for role_name, grants in dto.custom_roles.items():
                if role_name.upper() in builtin:
                    errors.setdefault(f"custom_roles.{role_name}", []).append("Built-in roles cannot be redefined")
                unknown = sorted(set(grants) - known)
                if unknown:
                    errors.setdefault(f"custom_roles.{role_name}", []).append(f"Unknown permissions: {', '.join(unknown)}")
            if errors:
                raise InvalidFieldsError(errors)

        row = self.repository.get_row(session)
        if row is None:
            row = LeadSettings(
                statuses=DEFAULT_STATUSES,
                sources=DEFAULT_SOURCES,
                products=DEFAULT_PRODUCTS,
                custom_roles={},
            )
            session.add(row)
        if dto.statuses is not None:
            row.statuses = [item.model_dump(exclude_none=True) for item in dto.statuses]
        if dto.sources is not None:
            row.sources = [item.model_dump(exclude_none=True) for item in dto.sources]
        if dto.products is not None:
            row.products = [item.model_dump(exclude_none=True) for item in dto.products]
        if dto.custom_roles is not None:
            row.custom_roles = dto.custom_roles
        session.commit()
        return ActionResult.ok("Settings updated")

    def list_assignable_users(self, session: Session, principal: Principal | None) -> list[UserRead]:
        require_loaded(principal, Operation.LIST_ASSIGNEES)
        rows = session.scalars(
            select(User)
            .where(User.role == BuiltinRole.SALES.value, User.active.is_(True))
            .order_by(User.name)
        ).all()
        return [UserRead.model_validate(row) for row in rows]
