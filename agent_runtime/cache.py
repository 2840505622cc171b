"""Bounded per-key LRU cache."""

from collections import OrderedDict
from typing import Generic, Hashable, List, TypeVar

T = TypeVar("T")


class KeyedLRUCache(Generic[T]):
    """
    Keeps a short, ordered list of entries per key.

    - At most `max_keys` keys; touching a key marks it most recently used,
      and the least recently used key is evicted on overflow.
    - At most `max_entries_per_key` entries per key; the oldest entry is
      dropped on overflow.
    """

    def __init__(self, max_keys: int, max_entries_per_key: int):
        if max_keys < 1 or max_entries_per_key < 1:
            raise ValueError("cache limits must be positive")
        self.max_keys = max_keys
        self.max_entries_per_key = max_entries_per_key
        self._data: "OrderedDict[Hashable, List[T]]" = OrderedDict()

    def add(self, key: Hashable, value: T):
        entries = self._touch(key)
        entries.append(value)
        if len(entries) > self.max_entries_per_key:
            del entries[0]

    def get(self, key: Hashable) -> List[T]:
        """Entries for key, oldest first; marks key as recently used."""
        if key not in self._data:
            return []
        self._data.move_to_end(key)
        return list(self._data[key])

    def __contains__(self, key: Hashable) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def _touch(self, key: Hashable) -> List[T]:
        if key in self._data:
            self._data.move_to_end(key)
        else:
            self._data[key] = []
            while len(self._data) > self.max_keys:
                self._data.popitem(last=False)
        return self._data[key]
