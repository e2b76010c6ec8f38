from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Generic, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm
from strawberry.relay.utils import from_base64, to_base64

from .relations import OrmRelation, Relation
from .tools import get_identity, primary_key_attributes


if TYPE_CHECKING:
    from .fetcher import AssociationFetcher

logger = logging.getLogger(__name__)

T = TypeVar("T")
Scope = Callable[[sa.Select[Any]], sa.Select[Any]]

CURSOR_PREFIX: Final[str] = "arrayconnection"


@dataclass(frozen=True, slots=True)
class PageInfo:
    has_next_page: bool
    has_previous_page: bool
    start_cursor: str | None
    end_cursor: str | None


@dataclass(frozen=True, slots=True)
class Edge(Generic[T]):
    node: T
    cursor: str


@dataclass(frozen=True, slots=True)
class Connection(Generic[T]):
    """One page of the related rows of one record."""

    edges: tuple[Edge[T], ...]
    page_info: PageInfo

    @property
    def nodes(self) -> list[T]:
        return [edge.node for edge in self.edges]

    def __len__(self) -> int:
        return len(self.edges)


@dataclass(frozen=True, slots=True, eq=False)
class ConnectionKey:
    record: Any
    identity: tuple[Any, ...]
    first: int | None
    after: str | None

    @property
    def cache_key(self) -> tuple[Any, ...]:
        return (self.identity, self.first, self.after)


def encode_cursor(offset: int) -> str:
    return to_base64(CURSOR_PREFIX, offset)


def decode_cursor(cursor: str) -> int:
    """Return the offset stored in *cursor*.

    Raises:
        ValueError: The cursor was not produced by :func:`encode_cursor`.
    """
    prefix, offset = from_base64(cursor)
    if prefix != CURSOR_PREFIX or not offset.isdigit():
        raise ValueError(f"Invalid cursor: {cursor!r}")

    return int(offset)


def paginatable(relation: Relation) -> OrmRelation:
    """Check that *relation* is a to-many ORM relationship."""
    if not isinstance(relation, OrmRelation) or not relation.uselist:
        raise ValueError(
            f"{relation.owner.__name__}.{relation.name} is not a to-many relationship "
            "and cannot be paginated"
        )

    return relation


def scoped_relation(record: Any, relation: OrmRelation) -> sa.Select[Any]:
    """SELECT of the rows *relation* points to from *record*, before any scope."""
    return sa.select(relation.target).where(
        orm.with_parent(record, getattr(relation.owner, relation.name))
    )


def _page_statement(
    record: Any,
    relation: OrmRelation,
    scope: Scope | None,
    offset: int,
    first: int | None,
) -> sa.Select[Any]:
    statement = scoped_relation(record, relation)
    if scope is not None:
        statement = scope(statement)

    statement = statement.order_by(*primary_key_attributes(relation.target)).offset(offset)
    if first is not None:
        statement = statement.limit(first + 1)

    return statement


async def fetch_connections(
    fetcher: AssociationFetcher,
    relation: OrmRelation,
    scope: Scope | None,
    keys: Sequence[ConnectionKey],
) -> list[Connection[Any]]:
    """Resolve one page per key.

    Pagination arguments differ per record, so each key costs one statement;
    what is shared is the dispatch, the session lock and the scope.
    """
    logger.info(
        "Paginating %s.%s for %d record(s)",
        relation.owner.__name__,
        relation.name,
        len(keys),
    )
    connections: list[Connection[Any]] = []
    for key in keys:
        offset = decode_cursor(key.after) + 1 if key.after is not None else 0
        statement = _page_statement(key.record, relation, scope, offset, key.first)
        rows = list((await fetcher.execute(statement)).scalars())

        has_next_page = key.first is not None and len(rows) > key.first
        if has_next_page:
            rows = rows[: key.first]

        edges = tuple(
            Edge(node=node, cursor=encode_cursor(offset + index)) for index, node in enumerate(rows)
        )
        connections.append(
            Connection(
                edges=edges,
                page_info=PageInfo(
                    has_next_page=has_next_page,
                    has_previous_page=offset > 0,
                    start_cursor=edges[0].cursor if edges else None,
                    end_cursor=edges[-1].cursor if edges else None,
                ),
            )
        )

    return connections


def connection_key(record: Any, first: int | None, after: str | None) -> ConnectionKey:
    """Validate pagination arguments and build the per-record key.

    Raises:
        ValueError: ``first`` is negative or ``after`` is not a valid cursor.
    """
    if first is not None and first < 0:
        raise ValueError(f"first must be >= 0, got {first}")

    if after is not None:
        decode_cursor(after)

    return ConnectionKey(record=record, identity=get_identity(record), first=first, after=after)
