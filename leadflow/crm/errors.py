from __future__ import annotations

import uuid
from typing import Any


class LeadOperationError(Exception):
    """Base for failures a lead operation reports back to its caller."""

    code = "error"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def extra(self) -> dict[str, Any]:
        return {}


class UnauthorizedError(LeadOperationError):
    code = "unauthorized"
    status_code = 403


class NotFoundError(LeadOperationError):
    code = "not_found"
    status_code = 404

    def __init__(self, message: str = "Lead not found") -> None:
        super().__init__(message)


class InvalidFieldsError(LeadOperationError):
    code = "invalid_fields"
    status_code = 422

    def __init__(self, errors: dict[str, list[str]], message: str = "Invalid fields") -> None:
        super().__init__(message)
        self.errors = errors

    def extra(self) -> dict[str, Any]:
        return {"errors": self.errors}


class DuplicateError(LeadOperationError):
    code = "duplicate"
    status_code = 409

    def __init__(self, lead_name: str, lead_id: uuid.UUID | None = None) -> None:
        super().__init__(f"Lead with this phone number already exists ({lead_name}).")
        self.lead_name = lead_name
        self.lead_id = lead_id

    def extra(self) -> dict[str, Any]:
        return {
            "duplicate": {
                "name": self.lead_name,
                "id": str(self.lead_id) if self.lead_id else None,
            }
        }


class DatabaseError(LeadOperationError):
    code = "database_error"
    status_code = 500
