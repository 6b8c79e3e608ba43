import logging
import uuid

from fastapi import Depends
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from starlette.requests import Request

from leadflow.context import get_correlation_id
from leadflow.core.config import get_settings
from leadflow.core.database import get_db
from leadflow.crm.repositories import SettingsRepository
from leadflow.platform.security import BuiltinRole, Principal, role_from_name

logger = logging.getLogger(__name__)

_BUILTIN_ROLES = {role.value for role in BuiltinRole}


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


def get_current_principal(request: Request, db: Session = Depends(get_db)) -> Principal | None:
    """Resolve the calling principal from a bearer JWT.

    Claims: ``sub`` (user id), ``role`` and ``name``. Missing or invalid
    tokens yield ``None``; every lead operation denies an absent principal.
    """

    token = _bearer_token(request)
    if not token:
        return None

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.info("rejected bearer token", extra={"error": str(exc)})
        return None

    try:
        user_id = uuid.UUID(str(payload.get("sub", "")))
    except ValueError:
        return None

    role_name = str(payload.get("role") or "").strip()
    if not role_name:
        return None

    custom_roles = None
    if role_name.upper() not in _BUILTIN_ROLES:
        custom_roles = SettingsRepository().load(db).custom_roles

    return Principal(
        user_id=user_id,
        role=role_from_name(role_name, custom_roles),
        name=str(payload.get("name") or ""),
        correlation_id=getattr(request.state, "correlation_id", None) or get_correlation_id(),
    )
