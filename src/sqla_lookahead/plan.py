"""Shapes and preload plans.

A :class:`Shape` describes what a caller is about to read below one field: a
node per selected field, leaves being scalars. A preload plan is what the
fetcher executes for one relationship: either :data:`BARE` (load the
relationship and stop) or :class:`Nested`, naming the relationships to load
under it.

Plans from every record of a batch are folded together with
:func:`merge_plans`. Merging is total, idempotent, commutative and
associative; the more nested side always wins, so ``BARE`` is absorbed by any
``Nested`` plan::

    merge_plans(BARE, Nested.of(author=BARE)) == Nested.of(author=BARE)
"""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from functools import reduce
from typing import Union, final


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from .datastructures import frozendict


@dataclass(frozen=True, slots=True)
class Shape:
    """One node of a lookahead tree supplied by the query executor.

    A node without children is a leaf scalar field. The tree is read-only; the
    plan builder never mutates it.
    """

    name: str
    children: tuple[Shape, ...] = ()

    @classmethod
    def of(cls, name: str, *children: Shape | str) -> Self:
        """Build a shape, accepting plain strings for leaf children.

        Example:
            >>> Shape.of("comments", "id", Shape.of("author", "name"))
        """
        return cls(
            name,
            tuple(child if isinstance(child, Shape) else Shape(child) for child in children),
        )

    @property
    def is_association(self) -> bool:
        """Heuristic: a node with sub-selections names a relationship.

        This is not an existence check against the schema. A scalar field that
        arrives with sub-selections is planned as a relationship and rejected by
        the fetcher with :class:`~sqla_lookahead.errors.MalformedShapeError`.
        """
        return bool(self.children)

    def selection(self, name: str) -> Shape | None:
        """Return the first direct child called *name*, if any."""
        return next((child for child in self.children if child.name == name), None)


@final
@dataclass(frozen=True, slots=True)
class Bare:
    """Load the relationship, nothing below it."""

    def __repr__(self) -> str:
        return "BARE"


BARE = Bare()


@final
@dataclass(frozen=True, slots=True)
class Nested:
    """Load the relationship and, under it, every relationship in ``children``."""

    children: frozendict[str, Plan]

    def __post_init__(self) -> None:
        if not self.children:
            raise ValueError("Nested plan needs at least one child; use BARE instead")

        if not isinstance(self.children, frozendict):
            object.__setattr__(self, "children", frozendict(self.children))

    @classmethod
    def of(cls, **children: Plan) -> Self:
        """Shorthand for ``Nested(frozendict(children))``."""
        return cls(frozendict(children))

    def __repr__(self) -> str:
        return f"Nested({dict(self.children)!r})"


Plan = Union[Bare, Nested]


def merge_plans(left: Plan, right: Plan) -> Plan:
    """Merge two plans for the same relationship.

    Nested maps are unioned and relationships named on both sides are merged
    recursively. A bare plan merged with anything yields the other side.
    """
    match left, right:
        case Bare(), _:
            return right
        case _, Bare():
            return left
        case Nested(mine), Nested(theirs):
            return Nested(mine.union(theirs, merge_plans))

    raise TypeError(f"Cannot merge {left!r} with {right!r}")


def _plan_for(shape: Shape, path: frozenset[str]) -> Plan:
    children: dict[str, Plan] = {}
    for child in shape.children:
        if not child.is_association:
            continue

        if child.name in path:
            # Already expanded on this branch; fetch the hop, do not recurse.
            nested = BARE
        else:
            nested = _plan_for(child, path | {child.name})

        children[child.name] = merge_plans(children.get(child.name, BARE), nested)

    return Nested(frozendict(children)) if children else BARE


def plan_for_shape(shape: Shape | None, ancestors: Iterable[str] = ()) -> Plan:
    """Build the plan for a single shape.

    Args:
        shape: Lookahead node of the relationship being requested, or ``None``.
        ancestors: Relationship names already traversed above this node. Any
            of them met again below is loaded but not expanded further.

    Returns:
        ``BARE`` when there is no shape or no child relationship.
    """
    if shape is None:
        return BARE

    return _plan_for(shape, frozenset(ancestors) | {shape.name})


def build_plan(shapes: Iterable[Shape | None]) -> Plan:
    """Merge the shapes of every record of a batch into one plan.

    Missing shapes are ignored; with no shape at all the plan is ``BARE``, which
    still loads the requested relationship for the whole batch in one go.
    """
    return reduce(merge_plans, (plan_for_shape(shape) for shape in shapes if shape is not None), BARE)


def plan_to_dict(plan: Plan) -> Mapping[str, object] | None:
    """Render a plan as plain dicts (``None`` for bare), for logging and tests."""
    if isinstance(plan, Bare):
        return None

    return {name: plan_to_dict(child) for name, child in plan.children.items()}
