from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from warden.logging import get_logger
from warden.service.errors import (
    ConflictError,
    IllegalArgumentError,
    NotAllowedError,
    ResourceNotFoundError,
)
from warden.storage.models import Role

logger = get_logger(__name__)


class RoleService:
    def __init__(self, store) -> None:
        self.store = store
        self._patch_fields: Dict[str, Callable[[Role, Any], None]] = {
            "description": self._set_description,
            "rights": self._set_rights,
            "is_default_role": self._set_default,
        }

    def _set_description(self, role: Role, value: Any) -> None:
        if not isinstance(value, str):
            raise IllegalArgumentError("Field 'description' must be a string")
        role.description = value

    def _set_rights(self, role: Role, value: Any) -> None:
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise IllegalArgumentError("Field 'rights' must be a list of authorities")
        role.rights = self._resolve_rights(value)

    def _set_default(self, role: Role, value: Any) -> None:
        if not isinstance(value, bool):
            raise IllegalArgumentError("Field 'is_default_role' must be a boolean")
        role.is_default_role = value

    def _resolve_rights(self, authorities: Iterable[Any]) -> Set[str]:
        known = {right.authority for right in self.store.list_rights()}
        rights = set()
        for authority in authorities:
            if authority not in known:
                raise IllegalArgumentError(f"Unknown right '{authority}'")
            rights.add(authority)
        return rights

    def _clear_other_defaults(self, role: Role) -> None:
        if not role.is_default_role:
            return
        for other in self.store.list_roles():
            if other.name != role.name and other.is_default_role:
                other.is_default_role = False
                self.store.save_role(other)
                logger.info("default_role_cleared", role=other.name)

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def get_role(self, name: str) -> Role:
        role = self.store.get_role(name)
        if role is None:
            raise ResourceNotFoundError("Role not found", detail={"name": name})
        return role

    def get_default_role(self) -> Optional[Role]:
        return next((role for role in self.store.list_roles() if role.is_default_role), None)

    def create_role(self, role: Role) -> Role:
        name = (role.name or "").strip()
        if not name:
            raise IllegalArgumentError("Role name must not be empty")
        if self.store.get_role(name) is not None:
            raise ConflictError("Role already exists", detail={"name": name})
        role = role.copy()
        role.name = name
        role.rights = self._resolve_rights(role.rights)
        with self.store.transaction():
            self._clear_other_defaults(role)
            saved = self.store.save_role(role)
        logger.info("role_created", role=saved.name, rights=len(saved.rights))
        return saved

    def _ensure_mutable(self, role: Role) -> None:
        if role.is_protected:
            raise NotAllowedError(f"Role '{role.name}' is protected")

    def update_role(self, name: str, role: Role) -> Role:
        if role.name != name:
            raise IllegalArgumentError("Name needs to match entity name")
        existing = self.get_role(name)
        self._ensure_mutable(existing)
        updated = existing.copy()
        updated.description = role.description
        updated.rights = self._resolve_rights(role.rights)
        updated.is_default_role = role.is_default_role
        return self._save(updated)

    def patch_role(self, name: str, changes: Dict[str, Any]) -> Role:
        existing = self.get_role(name)
        self._ensure_mutable(existing)
        updated = existing.copy()
        for field, value in changes.items():
            if field == "name":
                raise IllegalArgumentError("Name cannot be updated")
            handler = self._patch_fields.get(field)
            if handler is None:
                raise IllegalArgumentError(f"Field '{field}' cannot be updated")
            handler(updated, value)
        return self._save(updated)

    def _save(self, role: Role) -> Role:
        with self.store.transaction():
            self._clear_other_defaults(role)
            saved = self.store.save_role(role)
        logger.info("role_updated", role=saved.name, rights=len(saved.rights))
        return saved

    def delete_role(self, name: str) -> None:
        role = self.get_role(name)
        self._ensure_mutable(role)
        if self.store.list_users_by_role(name):
            raise NotAllowedError("There are users assigned to this role")
        self.store.delete_role(name)
        logger.info("role_deleted", role=name)
