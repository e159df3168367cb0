from __future__ import annotations

from typing import List, Set

from warden.logging import get_logger
from warden.service.errors import (
    ConflictError,
    IllegalArgumentError,
    ResourceNotFoundError,
)
from warden.storage.models import Right, User

logger = get_logger(__name__)


def rights_of(store, user: User) -> Set[str]:
    """Union of the rights granted by the user's roles."""
    rights: Set[str] = set()
    for name in user.roles:
        role = store.get_role(name)
        if role is not None:
            rights |= role.rights
    return rights


class RightService:
    def __init__(self, store) -> None:
        self.store = store

    def list_rights(self) -> List[Right]:
        return self.store.list_rights()

    def get_right(self, authority: str) -> Right:
        right = self.store.get_right(authority)
        if right is None:
            raise ResourceNotFoundError("Right not found", detail={"authority": authority})
        return right

    def create_right(self, authority: str, description: str = "") -> Right:
        authority = (authority or "").strip()
        if not authority:
            raise IllegalArgumentError("Authority must not be empty")
        if self.store.get_right(authority) is not None:
            raise ConflictError("Right already exists", detail={"authority": authority})
        right = self.store.save_right(Right(authority=authority, description=description or ""))
        logger.info("right_created", authority=authority)
        return right

    def update_right(self, authority: str, right: Right) -> Right:
        if right.authority != authority:
            raise IllegalArgumentError("Authority needs to match entity authority")
        existing = self.get_right(authority)
        existing.description = right.description or ""
        return self.store.save_right(existing)

    def delete_right(self, authority: str) -> None:
        self.get_right(authority)
        # the guarded store strips the right from every role first
        self.store.delete_right(authority)
        logger.info("right_deleted", authority=authority)
