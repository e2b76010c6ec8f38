"""Shapes from strawberry selections.

Strawberry exposes the selection of the field being resolved as
``info.selected_fields``. These helpers turn it into a :class:`Shape`, inlining
fragments into the field that spreads them, and converting GraphQL field names
to attribute names.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any

from strawberry.types.nodes import FragmentSpread, InlineFragment, SelectedField
from strawberry.utils.str_converters import to_snake_case

from .plan import Shape


Selection = SelectedField | InlineFragment | FragmentSpread


def _fields(selections: Iterable[Selection]) -> Iterable[SelectedField]:
    for selection in selections:
        if isinstance(selection, SelectedField):
            yield selection
        else:
            yield from _fields(selection.selections)


def shape_from_selection(
    selection: SelectedField,
    name_converter: Callable[[str], str] = to_snake_case,
) -> Shape:
    """Convert a strawberry ``SelectedField`` tree into a :class:`Shape`."""
    return Shape(
        name_converter(selection.name),
        tuple(
            shape_from_selection(child, name_converter)
            for child in _fields(selection.selections)
        ),
    )


def shape_from_info(
    info: Any,
    name_converter: Callable[[str], str] = to_snake_case,
) -> Shape | None:
    """Shape of the field currently resolved by strawberry, if known."""
    selected = getattr(info, "selected_fields", None)
    if not selected:
        return None

    return shape_from_selection(selected[0], name_converter)
