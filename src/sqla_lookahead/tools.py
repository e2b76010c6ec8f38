from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from functools import lru_cache
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm


T = TypeVar("T")
_M = TypeVar("_M", bound=orm.DeclarativeBase)


@lru_cache
def _get_primary_keys(model: type[Any]) -> tuple[str, ...]:
    """Return the attribute keys of *model*'s primary key columns (cached)."""
    mapper = sa.inspect(model)
    keys = tuple(mapper.get_property_by_column(column).key for column in mapper.primary_key)
    if not keys:
        raise ValueError(f"Cannot determine primary key for {model}")

    return keys


def get_primary_keys(model: type[Any]) -> tuple[str, ...]:
    """Get the primary key attribute names of a mapped model.

    The order matches the order of values in the ORM identity key, so
    ``zip(get_primary_keys(Model), get_identity(record))`` pairs each key with
    its value.

    Args:
        model: SQLAlchemy model class.

    Returns:
        Tuple of attribute names.
    """
    return _get_primary_keys(model)


def primary_key_attributes(
    entity: type[Any] | orm.AliasedClass[Any],
) -> tuple[orm.InstrumentedAttribute[Any], ...]:
    """Return the primary key attributes of a model or of an ``aliased()`` model."""
    model = sa.inspect(entity).mapper.class_
    return tuple(getattr(entity, key) for key in get_primary_keys(model))


def get_identity(record: object) -> tuple[Any, ...]:
    """Return the ORM identity of *record*.

    Raises:
        ValueError: If the record is transient or pending (it has not been
            flushed, so no primary key is known yet).
    """
    identity = sa.inspect(record).identity
    if identity is None:
        raise ValueError(f"{type(record).__name__} instance has no identity; flush it first")

    return identity


def identity_in(
    columns: Sequence[sa.ColumnElement[Any]],
    identities: Sequence[tuple[Any, ...]],
) -> sa.ColumnElement[bool]:
    """Build ``pk IN (...)``, or a row-value ``IN`` for composite keys."""
    if len(columns) == 1:
        return columns[0].in_([identity[0] for identity in identities])

    return sa.tuple_(*columns).in_(identities)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of *items* holding at most *size* elements."""
    if size < 1:
        raise ValueError(f"Chunk size must be >= 1, got {size}")

    for start in range(0, len(items), size):
        yield items[start : start + size]


def add_conditions(
    *conditions: sa.ColumnExpressionArgument[bool],
) -> Callable[[sa.Select[tuple[_M]]], sa.Select[tuple[_M]]]:
    """Create a scope function that adds WHERE conditions to a select query.

    Scope functions are what :meth:`BatchLoader.request_connection` applies to
    the related rows of each record before paginating them.

    Args:
        *conditions: SQLAlchemy column expressions that evaluate to boolean.

    Returns:
        A function that takes a select query and returns it with added conditions.

    Example:
        >>> not_spam = add_conditions(Comment.spam.is_(False))
        >>> connection = await loader.request_connection(post, "comments", not_spam, first=2)
    """

    def _add(query: sa.Select[tuple[_M]]) -> sa.Select[tuple[_M]]:
        return query.where(*conditions)

    return _add


def lookahead_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    return {fn.__name__: fn.cache_info() for fn in (_get_primary_keys,)}


def lookahead_cache_clear() -> None:
    """Clear all internal LRU caches."""
    for fn in (_get_primary_keys,):
        fn.cache_clear()
