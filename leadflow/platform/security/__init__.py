from leadflow.platform.security.context import (
    AdminRole,
    BuiltinRole,
    CustomRole,
    MarketingRole,
    Permission,
    Principal,
    Role,
    SalesRole,
    role_from_name,
)
from leadflow.platform.security.errors import AuthorizationError
from leadflow.platform.security.policies import (
    AccessDecision,
    Operation,
    authorize,
    is_assigned_to,
    require,
    visible_to_all,
)

__all__ = [
    "AccessDecision",
    "AdminRole",
    "AuthorizationError",
    "BuiltinRole",
    "CustomRole",
    "MarketingRole",
    "Operation",
    "Permission",
    "Principal",
    "Role",
    "SalesRole",
    "authorize",
    "is_assigned_to",
    "require",
    "role_from_name",
    "visible_to_all",
]
