from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow.crm.errors import DatabaseError, InvalidFieldsError, LeadOperationError, UnauthorizedError
from leadflow.metrics import observe_lead_operation
from leadflow.otel import tag_correlation
from leadflow.platform.security import AuthorizationError, Principal

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("leadflow.crm.operations")

ModelT = TypeVar("ModelT", bound=BaseModel)


class ActionResult(BaseModel):
    """Uniform outcome of a mutating lead operation.

    ``success`` is only ever ``True`` on the happy path; callers treat anything
    else as a failure. Operation specific values (``count``, ``lead_id``,
    ``starred``) travel as extra fields.
    """

    model_config = ConfigDict(extra="allow")

    message: str
    success: bool = False
    error: str | None = None
    errors: dict[str, list[str]] | None = None
    duplicate: dict[str, Any] | None = None

    @classmethod
    def ok(cls, message: str, **extra: Any) -> ActionResult:
        return cls(message=message, success=True, **extra)

    @classmethod
    def failure(cls, message: str, code: str, **extra: Any) -> ActionResult:
        return cls(message=message, success=False, error=code, **extra)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def field_errors(exc: ValidationError) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    for error in exc.errors():
        key = ".".join(str(part) for part in error["loc"]) or "__root__"
        errors.setdefault(key, []).append(error["msg"])
    return errors


def parse_payload(model: type[ModelT], payload: Any) -> ModelT:
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidFieldsError(field_errors(exc)) from exc


def _result_for(exc: LeadOperationError) -> ActionResult:
    return ActionResult.failure(exc.message, exc.code, **exc.extra())


def lead_operation(name: str, failure_message: str) -> Callable[[Callable[..., ActionResult]], Callable[..., ActionResult]]:
    """Run a service method as one lead operation.

    The wrapped method takes ``(self, session, principal, ...)`` and raises
    ``LeadOperationError``/``AuthorizationError`` for expected failures. Those
    are rolled back and reported as ``ActionResult``; store errors are logged
    with their stack and reported with ``failure_message`` only.
    """

    def decorator(func: Callable[..., ActionResult]) -> Callable[..., ActionResult]:
        @functools.wraps(func)
        def wrapper(self: Any, session: Session, principal: Principal | None, *args: Any, **kwargs: Any) -> ActionResult:
            started = time.perf_counter()
            with tracer.start_as_current_span(f"leads.{name}") as span:
                span.set_attribute("operation", name)
                if principal is not None:
                    span.set_attribute("user_id", str(principal.user_id))
                    span.set_attribute("role", principal.role_name)
                tag_correlation(span, principal.correlation_id if principal else None)
                try:
                    result = func(self, session, principal, *args, **kwargs)
                    outcome = "success" if result.success else (result.error or "failed")
                except AuthorizationError as exc:
                    session.rollback()
                    result = _result_for(UnauthorizedError(exc.reason))
                    outcome = UnauthorizedError.code
                except LeadOperationError as exc:
                    session.rollback()
                    result = _result_for(exc)
                    outcome = exc.code
                except SQLAlchemyError as exc:
                    session.rollback()
                    logger.exception(
                        "lead operation failed",
                        extra={
                            "operation": name,
                            "user_id": str(principal.user_id) if principal else None,
                            "error": str(exc),
                        },
                    )
                    result = _result_for(DatabaseError(failure_message))
                    outcome = DatabaseError.code
                span.set_attribute("outcome", outcome)

            observe_lead_operation(name, outcome, time.perf_counter() - started)
            return result

        return wrapper

    return decorator
