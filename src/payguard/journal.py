"""Per-key undo journal for the engine's stores.

A store calls ``remember(mapping, key)`` before it mutates ``mapping[key]``.
Only the first touch of a key inside a call is recorded, so rolling back
costs as much as the call itself did, not as much as the store's history.
"""

from __future__ import annotations

from typing import Any, Callable, Optional


_MISSING = object()


class UndoJournal:
    def __init__(self):
        self._entries: Optional[list[tuple[dict, Any, Any]]] = None
        self._seen: set[tuple[int, Any]] = set()

    @property
    def active(self) -> bool:
        return self._entries is not None

    def begin(self) -> None:
        self._entries = []
        self._seen = set()

    def remember(self, mapping: dict, key: Any, copier: Optional[Callable[[Any], Any]] = None) -> None:
        """Record the current value of ``mapping[key]`` unless already recorded."""
        if self._entries is None:
            return
        marker = (id(mapping), key)
        if marker in self._seen:
            return
        self._seen.add(marker)
        old = mapping.get(key, _MISSING)
        if old is not _MISSING and copier is not None:
            old = copier(old)
        self._entries.append((mapping, key, old))

    def rollback(self) -> None:
        """Put every recorded key back, newest first, and end the call."""
        for mapping, key, old in reversed(self._entries or []):
            if old is _MISSING:
                mapping.pop(key, None)
            else:
                mapping[key] = old
        self.commit()

    def commit(self) -> None:
        self._entries = None
        self._seen = set()
