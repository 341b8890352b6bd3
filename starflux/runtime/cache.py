"""Per-map memo of derived matrices and rotation state."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Hashable, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)

# Invalidation groups of each component. Degree-only components belong to no
# group and survive every coefficient mutation.
COMPONENT_GROUPS: Dict[str, Tuple[str, ...]] = {
    "A1": (),
    "A2": (),
    "taylor": ("y", "axis"),
    "ld_polynomial": ("u",),
}

GROUPS = ("y", "u", "axis")


class _CacheEntry(NamedTuple):
    """Cached value together with the groups that invalidate it."""

    key: Tuple[Hashable, ...]
    groups: Tuple[str, ...]
    value: Any


class Cache:
    """Memo keyed by ``(component, *key)`` with group invalidation.

    ``key[0]`` names the component; its invalidation groups come from
    :data:`COMPONENT_GROUPS` unless given explicitly. Not thread-safe.
    """

    def __init__(self) -> None:
        self._entries: Dict[Tuple[Hashable, ...], _CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Tuple[Hashable, ...]) -> bool:
        return tuple(key) in self._entries

    def get_or_compute(
        self,
        key: Tuple[Hashable, ...],
        builder: Callable[[], Any],
        *,
        groups: Optional[Tuple[str, ...]] = None,
    ) -> Any:
        """Return the value stored for ``key``, building it on a miss."""

        key = tuple(key)
        if not key:
            raise ValueError("cache key must name a component")
        entry = self._entries.get(key)
        if entry is not None:
            self.hits += 1
            return entry.value
        if groups is None:
            try:
                groups = COMPONENT_GROUPS[str(key[0])]
            except KeyError as exc:
                raise ValueError(f"unknown cache component {key[0]!r}") from exc
        unknown = set(groups) - set(GROUPS)
        if unknown:
            raise ValueError(f"unknown invalidation group(s) {sorted(unknown)}")
        self.misses += 1
        value = builder()
        self._entries[key] = _CacheEntry(key=key, groups=tuple(groups), value=value)
        logger.debug("cache miss for %s", key[0])
        return value

    def invalidate(self, group: str) -> int:
        """Drop every entry belonging to ``group``; return how many were dropped."""

        if group not in GROUPS:
            raise ValueError(f"unknown invalidation group {group!r}")
        stale = [key for key, entry in self._entries.items() if group in entry.groups]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("invalidated %d cache entries in group %r", len(stale), group)
        return len(stale)

    def clear(self) -> None:
        """Drop every entry and reset the counters."""

        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def components(self) -> Tuple[str, ...]:
        """Names of the components currently cached (sorted, unique)."""

        return tuple(sorted({str(key[0]) for key in self._entries}))


__all__ = ["COMPONENT_GROUPS", "Cache", "GROUPS"]
