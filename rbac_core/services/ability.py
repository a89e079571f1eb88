"""
Action/subject authorization on top of a PermissionIndex.

An engine is built once per session and handed to whoever needs a decision.
Re-authorization after a role change builds a new engine; nothing here mutates.
"""
from typing import Any, Iterable, Mapping, Union

from rbac_core.models.domain import Permission
from rbac_core.models.enums import ALL_SUBJECTS, CRUD_ACTIONS, Action
from rbac_core.services.permission_index import PermissionIndex

PermissionLike = Union[str, Permission, Mapping[str, Any]]


def _action_value(action: Union[str, Action]) -> str:
    return action.value if isinstance(action, Action) else str(action)


def _key_for(item: PermissionLike) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, Permission):
        return f"{item.subject}.{item.action}"
    return f"{item['subject']}.{_action_value(item['action'])}"


class AbilityEngine:
    """
    Answers can(action, subject).

    Grant resolution:
    - "subject.action" grants exactly that pair
    - "subject.manage" grants every CRUD action on subject
    - subject "all" applies the grant to every subject
    """

    __slots__ = ("_index",)

    def __init__(self, index: PermissionIndex):
        self._index = index

    @classmethod
    def from_permissions(cls, permissions: Iterable[PermissionLike]) -> "AbilityEngine":
        """Build from keys, Permission objects or {"subject", "action"} mappings."""
        return cls(PermissionIndex(_key_for(p) for p in permissions))

    @classmethod
    def empty(cls) -> "AbilityEngine":
        return cls(PermissionIndex())

    @property
    def index(self) -> PermissionIndex:
        return self._index

    def can(self, action: Union[str, Action], subject: str) -> bool:
        if not self._index:
            return False
        action = _action_value(action)
        candidates = [f"{subject}.{action}", f"{ALL_SUBJECTS}.{action}"]
        if action in {a.value for a in CRUD_ACTIONS}:
            candidates += [f"{subject}.{Action.MANAGE.value}", f"{ALL_SUBJECTS}.{Action.MANAGE.value}"]
        return self._index.has_any(candidates)

    def cannot(self, action: Union[str, Action], subject: str) -> bool:
        return not self.can(action, subject)

    def __repr__(self) -> str:
        return f"AbilityEngine({self._index!r})"
