# Copyright (c) 2025.
# This file is part of whitened-lsq, released under the MIT License.
"""Bidirectional map between variable keys and linear-system indices."""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List

from whitened_lsq.core.types import Index, Key


class Ordering:
    """
    Assigns consecutive indices 0..n-1 to variable keys.

    ``ordering[key]`` gives the index of a key, ``ordering.key(index)`` the
    key at an index.
    """

    def __init__(self) -> None:
        self._key_to_index: Dict[Key, Index] = {}
        self._index_to_key: List[Key] = []

    @staticmethod
    def from_keys(keys: Iterable[Key]) -> "Ordering":
        ordering = Ordering()
        for key in keys:
            ordering.push_back(key)
        return ordering

    def push_back(self, key: Key) -> Index:
        if key in self._key_to_index:
            raise KeyError(f"key {key!r} is already ordered")
        index = Index(len(self._index_to_key))
        self._key_to_index[key] = index
        self._index_to_key.append(key)
        return index

    def __getitem__(self, key: Key) -> Index:
        try:
            return self._key_to_index[key]
        except KeyError:
            raise KeyError(f"key {key!r} is not in the ordering") from None

    def at(self, key: Key) -> Index:
        return self[key]

    def key(self, index: int) -> Key:
        if not 0 <= index < len(self._index_to_key):
            raise IndexError(f"index {index} out of range for ordering of size {len(self)}")
        return self._index_to_key[index]

    def keys(self) -> List[Key]:
        return list(self._index_to_key)

    def __contains__(self, key: object) -> bool:
        return key in self._key_to_index

    def __len__(self) -> int:
        return len(self._index_to_key)

    def __iter__(self) -> Iterator[Key]:
        return iter(self._index_to_key)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Ordering) and self._index_to_key == other._index_to_key

    def __repr__(self) -> str:
        return f"Ordering({self._index_to_key!r})"
