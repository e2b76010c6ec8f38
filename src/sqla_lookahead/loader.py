from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Hashable, Sequence
from dataclasses import dataclass
from functools import partial
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from strawberry.dataloader import DataLoader

from .config import LoaderConfig
from .connection import (
    Connection,
    ConnectionKey,
    Scope,
    connection_key,
    fetch_connections,
    paginatable,
)
from .fetcher import AssociationFetcher
from .ledger import Ledger
from .plan import BARE, Shape, build_plan, plan_to_dict
from .registry import Registry
from .tools import get_identity


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, eq=False)
class AssociationKey:
    record: Any
    identity: tuple[Any, ...]
    shape: Shape | None


def _association_cache_key(key: AssociationKey) -> Hashable:
    return key.identity


def _connection_cache_key(key: ConnectionKey) -> Hashable:
    return key.cache_key


class BatchLoader:
    """Coalesce relationship loads issued while resolving one root query.

    Each ``(owner model, relationship name)`` pair gets its own
    :class:`~strawberry.dataloader.DataLoader`. Requests made before the event
    loop gets a chance to dispatch (one "tick") are collected, their shapes are
    merged into a single preload plan, and the batch is handed to the
    :class:`~sqla_lookahead.fetcher.AssociationFetcher` once. Requesting the
    same record again returns the same pending handle, and a fulfilled value is
    served from memory for the rest of the query.

    A loader, its ledger and its caches belong to one root query; create a new
    one per request.

    Example::

        loader = BatchLoader(session)
        comments = await loader.request(post, "comments", Shape.of("comments", "id"))
    """

    __slots__ = ("_connection_loaders", "_loaders", "_pending", "config", "fetcher", "ledger", "registry")

    def __init__(
        self,
        session: AsyncSession,
        *,
        registry: Registry | None = None,
        config: LoaderConfig | None = None,
    ) -> None:
        self.registry = registry if registry is not None else Registry()
        self.config = config if config is not None else LoaderConfig()
        self.ledger = Ledger()
        self.fetcher = AssociationFetcher(
            session,
            self.registry,
            self.ledger,
            max_batch_size=self.config.max_batch_size,
        )
        self._loaders: dict[tuple[type[Any], str], DataLoader[AssociationKey, Any]] = {}
        self._connection_loaders: dict[
            tuple[type[Any], str, Scope | None], DataLoader[ConnectionKey, Connection[Any]]
        ] = {}
        self._pending: list[Awaitable[Any]] = []

    def request(self, record: Any, name: str, shape: Shape | None = None) -> Awaitable[Any]:
        """Schedule relationship *name* of *record* for the current tick.

        Args:
            record: A persistent mapped instance.
            name: Relationship declared on the record's model.
            shape: Lookahead node of the field being resolved; ``None`` loads
                the relationship without nesting.

        Returns:
            Awaitable resolving to the related object, list or ``None``.

        Raises:
            UnknownRelationshipError: *name* is not declared on the model.
            ValueError: *record* has no identity.
        """
        model = type(record)
        relation = self.registry.relation(model, name)
        identity = get_identity(record)

        if self.ledger.already_visited_edge(model, identity, name) and relation.is_loaded(record):
            return self._resolved(relation.get(record))

        self.ledger.mark_visited_edge(model, identity, name)
        loader = self._association_loader(model, name)

        return self._track(loader.load(AssociationKey(record=record, identity=identity, shape=shape)))

    def request_many(
        self,
        records: Sequence[Any],
        name: str,
        shape: Shape | None = None,
    ) -> Awaitable[list[Any]]:
        """:meth:`request` for several records at once, gathered in order."""
        return asyncio.gather(*(self.request(record, name, shape) for record in records))

    def request_connection(
        self,
        record: Any,
        name: str,
        scope: Scope | None = None,
        *,
        first: int | None = None,
        after: str | None = None,
    ) -> Awaitable[Connection[Any]]:
        """Schedule one page of the to-many relationship *name* of *record*.

        Requests are batched per ``(model, name, scope)``; pagination arguments
        never merge across records.

        Args:
            record: A persistent mapped instance.
            name: To-many relationship declared on the record's model.
            scope: Applied to the base SELECT of the related rows before
                pagination, e.g. ``add_conditions(Comment.spam.is_(False))``.
            first: Page size; ``None`` returns every row.
            after: Cursor of the last edge of the previous page.

        Raises:
            UnknownRelationshipError: *name* is not declared on the model.
            ValueError: The relationship is not to-many, or the pagination
                arguments are invalid.
        """
        model = type(record)
        paginatable(self.registry.relation(model, name))
        key = connection_key(record, first, after)
        loader = self._connection_loader(model, name, scope)

        return self._track(loader.load(key))

    async def fetch_unbatched(self, record: Any, name: str) -> Any:
        """Load relationship *name* of a single record right away, without batching."""
        model = type(record)
        await self.fetcher.fetch(model, name, [record], BARE)

        return self.registry.relation(model, name).get(record)

    async def flush(self) -> None:
        """Wait until every handle issued so far has settled.

        Errors are not raised here; they stay on the handles, where awaiting
        them (or calling ``result()``) raises.
        """
        while self._pending:
            pending, self._pending = self._pending, []
            await asyncio.gather(*pending, return_exceptions=True)

    def _association_loader(self, model: type[Any], name: str) -> DataLoader[AssociationKey, Any]:
        loader = self._loaders.get((model, name))
        if loader is None:
            loader = self._loaders[model, name] = DataLoader(
                load_fn=partial(self._load_associations, model, name),
                cache_key_fn=_association_cache_key,
            )

        return loader

    def _connection_loader(
        self,
        model: type[Any],
        name: str,
        scope: Scope | None,
    ) -> DataLoader[ConnectionKey, Connection[Any]]:
        loader = self._connection_loaders.get((model, name, scope))
        if loader is None:
            loader = self._connection_loaders[model, name, scope] = DataLoader(
                load_fn=partial(self._load_connections, model, name, scope),
                cache_key_fn=_connection_cache_key,
            )

        return loader

    async def _load_associations(
        self,
        model: type[Any],
        name: str,
        keys: list[AssociationKey],
    ) -> list[Any]:
        plan = build_plan(key.shape for key in keys)
        logger.info(
            "Batch %s.%s: %d record(s), plan %r",
            model.__name__,
            name,
            len(keys),
            plan_to_dict(plan),
        )
        records = [key.record for key in keys]
        await self.fetcher.fetch(model, name, records, plan)
        relation = self.registry.relation(model, name)

        return [relation.get(record) for record in records]

    async def _load_connections(
        self,
        model: type[Any],
        name: str,
        scope: Scope | None,
        keys: list[ConnectionKey],
    ) -> list[Connection[Any]]:
        relation = paginatable(self.registry.relation(model, name))
        return await fetch_connections(self.fetcher, relation, scope, keys)

    def _track(self, handle: Awaitable[Any]) -> Awaitable[Any]:
        self._pending.append(handle)
        return handle

    def _resolved(self, value: Any) -> Awaitable[Any]:
        future = asyncio.get_running_loop().create_future()
        future.set_result(value)
        return future
