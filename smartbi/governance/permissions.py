"""
Dataset permissions.

Each dataset embeds a permission list of ``(user_id, role)`` pairs.  Roles
are ordered::

    viewer < editor < owner

The dataset's creator (``Dataset.user_id``) holds every role implicitly.

Operation requirements:
  get / preview / query   viewer
  update / refresh        editor
  delete                  owner
"""
from __future__ import annotations

from smartbi.core.errors import PermissionDenied
from smartbi.datasets.models import Dataset, Role
from smartbi.core.logging import get_logger

logger = get_logger(__name__)

ROLE_LEVEL: dict[Role, int] = {
    Role.VIEWER: 1,
    Role.EDITOR: 2,
    Role.OWNER: 3,
}


def role_of(dataset: Dataset, user_id: str) -> Role | None:
    """Return the effective role of *user_id* on *dataset*, or None."""
    if dataset.user_id == user_id:
        return Role.OWNER
    best: Role | None = None
    for perm in dataset.permissions:
        if perm.user_id == user_id and (best is None or ROLE_LEVEL[perm.role] > ROLE_LEVEL[best]):
            best = perm.role
    return best


def has_permission(dataset: Dataset, user_id: str, required: Role = Role.VIEWER) -> bool:
    role = role_of(dataset, user_id)
    return role is not None and ROLE_LEVEL[role] >= ROLE_LEVEL[required]


def require(dataset: Dataset, user_id: str, required: Role) -> None:
    """Raise ``PermissionDenied`` unless *user_id* holds *required* or above."""
    if not has_permission(dataset, user_id, required):
        logger.warning(
            "Permission denied user=%s dataset=%s required=%s", user_id, dataset.id, required.value
        )
        raise PermissionDenied(user_id, dataset.id, required.value)
