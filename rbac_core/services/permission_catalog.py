"""Helpers over the read-only permission catalogue."""
from typing import Dict, Iterable, List, Optional, Tuple

from rbac_core.models.domain import Permission
from rbac_core.models.enums import PermissionCategory, RiskLevel

HIGH_RISK_LEVELS = (RiskLevel.HIGH, RiskLevel.CRITICAL)


def is_valid_permission_key(key: str) -> bool:
    """A key is exactly two non-empty parts: module.action."""
    parts = key.split(".")
    return len(parts) == 2 and all(parts)


def parse_permission_key(key: str) -> Optional[Tuple[str, str]]:
    """(module, action) for a well-formed key, else None."""
    if not is_valid_permission_key(key):
        return None
    module, action = key.split(".")
    return module, action


def group_by_module(permissions: Iterable[Permission]) -> Dict[str, List[Permission]]:
    grouped: Dict[str, List[Permission]] = {}
    for permission in permissions:
        grouped.setdefault(permission.module, []).append(permission)
    return grouped


def filter_by_risk(permissions: Iterable[Permission], risk_level: RiskLevel) -> List[Permission]:
    return [p for p in permissions if p.risk_level == risk_level]


def filter_by_category(permissions: Iterable[Permission], category: PermissionCategory) -> List[Permission]:
    return [p for p in permissions if p.category == category]


def high_risk(permissions: Iterable[Permission]) -> List[Permission]:
    return [p for p in permissions if p.risk_level in HIGH_RISK_LEVELS]


def compare_permissions(old_keys: List[str], new_keys: List[str]) -> Dict[str, List[str]]:
    """
    Diff two permission key lists.

    added keeps the order of new_keys; removed and unchanged keep the order of old_keys.
    """
    old_set, new_set = set(old_keys), set(new_keys)
    return {
        "added": [k for k in new_keys if k not in old_set],
        "removed": [k for k in old_keys if k not in new_set],
        "unchanged": [k for k in old_keys if k in new_set],
    }


def display_name(key: str, catalogue: Iterable[Permission]) -> str:
    """Human label for a key, falling back to the raw key when unknown."""
    for permission in catalogue:
        if permission.key == key:
            return f"{permission.module_display_name} - {permission.display_name}"
    return key
