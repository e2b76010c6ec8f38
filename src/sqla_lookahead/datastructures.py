from __future__ import annotations

import sys
from collections.abc import Callable, Iterator, Mapping
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Preload plans are built from nested frozendicts so that two structurally
    identical plans compare equal and hash the same regardless of the order in
    which their relationships were discovered. That is what lets the ledger
    recognise a plan it has already fetched.

    Example:
        >>> fd = frozendict({"comments": 1})
        >>> fd == {"comments": 1}
        True
        >>> fd.union({"tags": 2})
        <frozendict {'comments': 1, 'tags': 2}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash = hash(frozenset(self._dict.items()))

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        return self._hash

    def union(
        self,
        other: Mapping[K, V],
        combine: Callable[[V, V], V] | None = None,
    ) -> Self:
        """Return a new frozendict holding the keys of both mappings.

        Args:
            other: Mapping whose items are added.
            combine: Called with ``(mine, theirs)`` for keys present on both
                sides. When omitted the value from *other* wins.

        Returns:
            New frozendict; neither operand is modified.
        """
        merged = dict(self._dict)
        for key, value in other.items():
            if combine is not None and key in merged:
                merged[key] = combine(merged[key], value)
            else:
                merged[key] = value

        return type(self)(merged)
