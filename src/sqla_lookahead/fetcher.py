from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.util import ClauseAdapter

from .config import DEFAULT_MAX_BATCH_SIZE
from .errors import StorageError
from .ledger import Identity, Ledger, Signature
from .plan import Nested, Plan, plan_to_dict
from .registry import Registry
from .relations import OrmRelation, PolymorphicRelation, Relation
from .tools import chunked, get_identity, identity_in, primary_key_attributes


logger = logging.getLogger(__name__)

_Handles = dict[Identity, list[Any]]


class AssociationFetcher:
    """Populate a relationship on a set of records, and everything a plan names below it.

    Each level of a plan costs one statement per chunk of owners (per concrete
    target type for polymorphic relationships), however many records take part:

    * ORM relationships select ``owner pk, aliased target`` over a join built
      from the relationship itself, so o2m, m2o, m2m, self-referential and
      custom ``primaryjoin`` relationships are all handled the same way;
    * polymorphic relationships select each target model by primary key.

    Records whose slot is already loaded are not queried again; the plan below
    them is still walked, so a level only queries the slots it is missing.
    Values are written to every handle sharing an identity, not only to the one
    used to build the query.

    All statements run under one lock, which serializes access to the session:
    an ``AsyncSession`` does not allow concurrent operations while batch keys
    flushed in the same tick run as concurrent tasks. Slots are checked again
    once the lock is held and a chunk is written before it is released, so two
    batch keys reaching the same slot query it once.

    Collections come back in the relationship's declared ``order_by``, else
    by target primary key.
    """

    __slots__ = ("_lock", "ledger", "max_batch_size", "registry", "session")

    def __init__(
        self,
        session: AsyncSession,
        registry: Registry,
        ledger: Ledger,
        *,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ) -> None:
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {max_batch_size}")

        self.session = session
        self.registry = registry
        self.ledger = ledger
        self.max_batch_size = max_batch_size
        self._lock = asyncio.Lock()

    async def execute(self, statement: sa.Executable) -> sa.Result[Any]:
        """Run *statement* on the session, one statement at a time.

        Raises:
            StorageError: The driver or the connection pool failed.
        """
        async with self._lock:
            return await self._execute(statement)

    async def _execute(self, statement: sa.Executable) -> sa.Result[Any]:
        # caller holds the lock
        try:
            return await self.session.execute(statement)
        except (sa.exc.DBAPIError, sa.exc.TimeoutError) as exc:
            raise StorageError(str(exc)) from exc

    async def fetch(
        self,
        model: type[Any],
        name: str,
        records: Iterable[Any],
        plan: Plan,
        *,
        nested: bool = False,
    ) -> None:
        """Load relationship *name* on *records* and then, recursively, *plan*.

        Args:
            model: Owner model shared by all records.
            name: Relationship to populate.
            records: Owner instances; duplicates and equal identities are fine.
            plan: What to load under the relationship.
            nested: Set when called for a level of a plan (changes which error a
                non-relationship name raises).

        Raises:
            UnknownRelationshipError: *name* is not declared on *model*.
            MalformedShapeError: A nested plan level names a plain attribute.
            StorageError: The database failed.
        """
        relation = self.registry.relation(model, name, nested=nested)
        signature = Signature(model, name, plan)
        handles = _group_by_identity(records)
        _share_loaded(relation, handles)

        pending: _Handles = {}
        unwalked: _Handles = {}
        for identity, group in handles.items():
            if not relation.is_loaded(_representative(relation, group)):
                pending[identity] = group
            elif self.ledger.already_fetched(signature, identity):
                # The whole plan below was loaded together with the slot.
                continue
            unwalked[identity] = group

        if len(unwalked) < len(handles):
            logger.debug(
                "%s.%s: %d record(s) already fetched with this plan",
                model.__name__,
                name,
                len(handles) - len(unwalked),
            )

        if pending:
            logger.debug(
                "Fetching %s.%s for %d of %d record(s), plan %r",
                model.__name__,
                name,
                len(pending),
                len(handles),
                plan_to_dict(plan),
            )
            if isinstance(relation, PolymorphicRelation):
                await self._fetch_polymorphic(relation, pending)
            else:
                await self._fetch_relationship(relation, pending)
        elif unwalked:
            logger.debug("%s.%s already loaded for all records", model.__name__, name)

        if isinstance(plan, Nested) and unwalked:
            await self._fetch_nested(relation, unwalked, plan)

        self.ledger.mark_fetched(signature, unwalked)

    async def _fetch_relationship(self, relation: OrmRelation, pending: _Handles) -> None:
        owner = relation.owner
        target = orm.aliased(relation.target)
        owner_keys = primary_key_attributes(owner)
        adapter = ClauseAdapter(sa.inspect(target).selectable)
        order_by = [adapter.traverse(clause) for clause in relation.order_by]
        if not order_by:
            order_by = list(primary_key_attributes(target))

        for chunk in chunked(list(pending), self.max_batch_size):
            async with self._lock:
                # another batch key may have filled these slots while we waited
                chunk = [identity for identity in chunk if _unloaded(relation, pending[identity])]
                if not chunk:
                    continue

                statement = (
                    sa.select(*owner_keys, target)
                    .join(getattr(owner, relation.name).of_type(target))
                    .where(identity_in(owner_keys, chunk))
                    .order_by(*order_by)
                )
                logger.debug(
                    "Loading %s.%s for a chunk of %d", owner.__name__, relation.name, len(chunk)
                )
                result = await self._execute(statement)

                found: dict[Identity, list[Any]] = {identity: [] for identity in chunk}
                seen: dict[Identity, set[int]] = {identity: set() for identity in chunk}
                for *key, child in result:
                    identity = tuple(key)
                    if id(child) not in seen[identity]:
                        seen[identity].add(id(child))
                        found[identity].append(child)

                for identity, children in found.items():
                    for record in pending[identity]:
                        if relation.uselist:
                            relation.set(record, list(children))
                        else:
                            relation.set(record, children[0] if children else None)

    async def _fetch_polymorphic(self, relation: PolymorphicRelation, pending: _Handles) -> None:
        by_type: dict[Any, _Handles] = {}
        for identity, group in pending.items():
            discriminator = getattr(group[0], relation.type_attr)
            by_type.setdefault(discriminator, {})[identity] = group

        for discriminator, members in by_type.items():
            target = relation.target_for(discriminator)
            if target is None:
                logger.info(
                    "Skipping %d %s record(s): %s=%r is not a registered target of %s",
                    len(members),
                    relation.owner.__name__,
                    relation.type_attr,
                    discriminator,
                    relation.name,
                )
                for group in members.values():
                    for record in group:
                        relation.set(record, None)
                continue

            await self._fetch_polymorphic_target(relation, target, members)

    async def _fetch_polymorphic_target(
        self,
        relation: PolymorphicRelation,
        target: type[Any],
        members: _Handles,
    ) -> None:
        (key,) = primary_key_attributes(target)
        by_value: dict[Any, list[list[Any]]] = {}
        for group in members.values():
            by_value.setdefault(getattr(group[0], relation.id_attr), []).append(group)

        # a null reference points nowhere
        for group in by_value.pop(None, ()):
            for record in group:
                relation.set(record, None)

        for chunk in chunked(list(by_value), self.max_batch_size):
            async with self._lock:
                groups = {
                    value: [group for group in by_value[value] if _unloaded(relation, group)]
                    for value in chunk
                }
                wanted = [value for value, waiting in groups.items() if waiting]
                if not wanted:
                    continue

                logger.debug(
                    "Loading %s %s for a chunk of %d",
                    relation.name,
                    target.__name__,
                    len(wanted),
                )
                result = await self._execute(sa.select(target).where(key.in_(wanted)))
                found = {getattr(obj, key.key): obj for obj in result.scalars()}

                for value in wanted:
                    for group in groups[value]:
                        for record in group:
                            relation.set(record, found.get(value))

    async def _fetch_nested(self, relation: Relation, handles: _Handles, plan: Nested) -> None:
        by_model: dict[type[Any], dict[int, Any]] = {}
        for group in handles.values():
            for child in relation.values(_representative(relation, group)):
                by_model.setdefault(type(child), {})[id(child)] = child

        for child_model, children in by_model.items():
            for child_name, child_plan in plan.children.items():
                if isinstance(relation, PolymorphicRelation) and not hasattr(child_model, child_name):
                    # Union members need not share fields; only load what this target has.
                    logger.debug(
                        "%s has no %r; skipped under %s.%s",
                        child_model.__name__,
                        child_name,
                        relation.owner.__name__,
                        relation.name,
                    )
                    continue

                await self.fetch(
                    child_model,
                    child_name,
                    list(children.values()),
                    child_plan,
                    nested=True,
                )


def _group_by_identity(records: Iterable[Any]) -> _Handles:
    """Group record handles by identity, dropping repeats of the same handle."""
    handles: _Handles = {}
    for record in records:
        group = handles.setdefault(get_identity(record), [])
        if not any(record is other for other in group):
            group.append(record)

    return handles


def _representative(relation: Relation, group: Sequence[Any]) -> Any:
    """First handle of *group* with *relation* loaded, else the first handle."""
    return next((record for record in group if relation.is_loaded(record)), group[0])


def _share_loaded(relation: Relation, handles: Mapping[Identity, Sequence[Any]]) -> None:
    """Copy a loaded value onto every other handle with the same identity."""
    for group in handles.values():
        if len(group) == 1:
            continue

        source = _representative(relation, group)
        if not relation.is_loaded(source):
            continue

        value = relation.get(source)
        for record in group:
            if record is not source and not relation.is_loaded(record):
                relation.set(record, list(value) if relation.uselist else value)


def _unloaded(relation: Relation, group: Sequence[Any]) -> bool:
    return not relation.is_loaded(_representative(relation, group))
