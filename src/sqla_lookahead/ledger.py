from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .plan import Plan


Identity = tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class Signature:
    """What a fetch loaded: relationship *name* of *model*, expanded by *plan*."""

    model: type[Any]
    name: str
    plan: Plan


class Ledger:
    """Bookkeeping for one root query.

    Two independent records are kept:

    * fetched signatures, with the identities each was fetched for, so a batch
      repeating an identical plan over the same records is skipped;
    * visited ``(model, identity, relationship)`` edges, used at registration
      time to answer repeated requests without scheduling them again.

    A ledger is never shared between root queries.
    """

    __slots__ = ("_edges", "_fetched")

    def __init__(self) -> None:
        self._fetched: dict[Signature, set[Identity]] = {}
        self._edges: set[tuple[type[Any], Identity, str]] = set()

    def already_fetched(self, signature: Signature, identity: Identity) -> bool:
        return identity in self._fetched.get(signature, ())

    def mark_fetched(self, signature: Signature, identities: Iterable[Identity]) -> None:
        self._fetched.setdefault(signature, set()).update(identities)

    def already_visited_edge(self, model: type[Any], identity: Identity, name: str) -> bool:
        return (model, identity, name) in self._edges

    def mark_visited_edge(self, model: type[Any], identity: Identity, name: str) -> None:
        self._edges.add((model, identity, name))

    def clear(self) -> None:
        self._fetched.clear()
        self._edges.clear()

    def __len__(self) -> int:
        return len(self._fetched)
