"""
Set-membership index over a role's permission keys.

Invariants:
- Built once from a key sequence and never mutated afterwards
- Absent keys test False; there are no error conditions
"""
from typing import FrozenSet, Iterable, Iterator, List


class PermissionIndex:
    """O(1) membership tests over "module.action" permission keys."""

    __slots__ = ("_keys",)

    def __init__(self, keys: Iterable[str] = ()):
        self._keys: FrozenSet[str] = frozenset(keys)

    def has(self, key: str) -> bool:
        return key in self._keys

    def has_any(self, keys: Iterable[str]) -> bool:
        return any(k in self._keys for k in keys)

    def has_all(self, keys: Iterable[str]) -> bool:
        return all(k in self._keys for k in keys)

    def keys_for_module(self, module: str) -> FrozenSet[str]:
        prefix = f"{module}."
        return frozenset(k for k in self._keys if k.startswith(prefix))

    def missing(self, keys: Iterable[str]) -> List[str]:
        """Required keys the index does not hold, in the order given."""
        return [k for k in keys if k not in self._keys]

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._keys))

    def __repr__(self) -> str:
        return f"PermissionIndex({len(self._keys)} keys)"
