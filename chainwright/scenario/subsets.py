"""Subset enumeration for migration scenarios."""

from __future__ import annotations

from typing import Generic, Iterator, Sequence, TypeVar

T = TypeVar("T")


class Powerset(Generic[T]):
    """Every subset of a fixed pool, produced lazily by counting a bitmask.

    Iterating twice yields the same subsets in the same order.
    """

    def __init__(self, items: Sequence[T]) -> None:
        self._items = list(items)

    def __len__(self) -> int:
        return 1 << len(self._items)

    def __iter__(self) -> Iterator[list[T]]:
        n = len(self._items)
        for mask in range(1 << n):
            yield [self._items[i] for i in range(n) if mask >> i & 1]


def subsets(items: Sequence[T], include_empty: bool = True) -> Iterator[list[T]]:
    """Yield subsets of ``items``; the empty one is dropped if asked to,
    unless it is the only subset there is."""
    power = Powerset(items)
    for subset in power:
        if not subset and not include_empty and len(power) > 1:
            continue
        yield subset
