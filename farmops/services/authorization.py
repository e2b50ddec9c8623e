from __future__ import annotations

from farmops.core.exceptions import AuthorizationError
from farmops.repositories.interfaces import PermissionChecker


async def require_elevated_role(
    permissions: PermissionChecker | None, user_id: str, farm_id: int, action: str
) -> None:
    """Raise AuthorizationError unless ``user_id`` holds an elevated role on the farm.

    A service built without a permission checker refuses every caller.
    """

    if permissions is None or not await permissions.has_elevated_role(user_id, farm_id):
        raise AuthorizationError(f"user {user_id} may not {action} for farm {farm_id}")
