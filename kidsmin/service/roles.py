from __future__ import annotations

from typing import List

from kidsmin.logging import get_logger
from kidsmin.storage.models import RoleView

logger = get_logger(__name__)


class RoleResolver:
    """Looks up the role assignments an authenticated individual currently holds."""

    def __init__(self, store) -> None:
        self.store = store

    def active_roles_for_individual(self, individual_id: str) -> List[RoleView]:
        roles = self.store.list_active_roles(individual_id)
        logger.debug("roles_resolved", individual_id=individual_id, count=len(roles))
        return roles

    def active_role_dicts(self, individual_id: str) -> List[dict]:
        return [role.to_dict() for role in self.active_roles_for_individual(individual_id)]
