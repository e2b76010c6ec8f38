from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, ClassVar, final

from sqlalchemy import orm

from .datastructures import frozendict
from .errors import MalformedShapeError, UnknownRelationshipError
from .relations import OrmRelation, Relation, polymorphic


RelationMap = Mapping[type[Any], Mapping[str, Relation]]


@final
class Registry:
    """Singleton holding the relationship table of every mapped model.

    The table is built once at startup by :func:`get_registry` and maps each
    model to ``{relationship name: Relation}``. Every relation carries the
    accessor/mutator pair the fetcher uses to read and populate relationship
    slots, so nothing is looked up dynamically per call.
    """

    __instance: ClassVar[Registry | None] = None
    _relations: RelationMap

    def __new__(cls, relations: RelationMap | None = None) -> Registry:
        if cls.__instance is None:
            instance = super().__new__(cls)
            if relations is not None:
                instance.set_relations(relations)

            cls.__instance = instance

        if not getattr(cls.__instance, "_relations", None):
            raise RuntimeError("Registry is not initialized or empty")

        return cls.__instance

    def get(self, model: type[Any]) -> Mapping[str, Relation]:
        """Get the relations declared on *model*, or an empty mapping."""
        return self.relations.get(model, frozendict())

    def __getitem__(self, model: type[Any]) -> Mapping[str, Relation]:
        """Look up relations for *model*, raising ``KeyError`` if not found."""
        return self.relations[model]

    def __iter__(self) -> Iterator[type[Any]]:
        return iter(self.relations)

    def find(self, model: type[Any], name: str) -> Relation | None:
        """Return the relation *name* of *model*, or ``None``."""
        return self.get(model).get(name)

    def relation(self, model: type[Any], name: str, *, nested: bool = False) -> Relation:
        """Return the relation *name* of *model*.

        Args:
            model: Owner model class.
            name: Relationship name.
            nested: ``True`` when *name* comes from a nested level of a preload
                plan rather than from the caller. A nested name that exists on
                the model as a plain attribute (a column, a property) means the
                shape asked to preload a scalar.

        Raises:
            UnknownRelationshipError: *name* is not a relationship of *model*.
            MalformedShapeError: *nested* is set and *name* is a plain attribute.
        """
        relation = self.find(model, name)
        if relation is not None:
            return relation

        if nested and hasattr(model, name):
            raise MalformedShapeError(model, name)

        raise UnknownRelationshipError(model, name)

    @property
    def relations(self) -> RelationMap:
        """The underlying model-to-relations mapping (read-only)."""
        return self._relations

    def set_relations(self, relations: RelationMap) -> None:
        """Set the relation table for this registry instance."""
        self._relations = relations

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, allowing re-initialization (primarily for tests)."""
        cls._relations = {}
        cls.__instance = None


def _polymorphic_declarations(model: type[Any]) -> Iterator[polymorphic]:
    seen: set[str] = set()
    for klass in model.__mro__:
        for name, value in vars(klass).items():
            if isinstance(value, polymorphic) and name not in seen:
                seen.add(name)
                yield value


def get_registry(base: type[orm.DeclarativeBase]) -> frozendict[type[Any], frozendict[str, Relation]]:
    """Build the relation table for every model mapped on a declarative base.

    ORM relationships come from each mapper; polymorphic relationships come from
    :class:`~sqla_lookahead.relations.polymorphic` declarations on the model or
    its bases. Polymorphic target names are resolved against the class names of
    the same registry.

    Args:
        base: SQLAlchemy declarative base class.

    Returns:
        Frozen mapping of model class to ``{name: Relation}``.

    Raises:
        AssertionError: If base is not a direct subclass of orm.DeclarativeBase.
        ValueError: If a polymorphic declaration names an unmapped class.
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    mappers = tuple(base.registry.mappers)
    classes = {mapper.class_.__name__: mapper.class_ for mapper in mappers}
    table: dict[type[Any], frozendict[str, Relation]] = {}
    for mapper in mappers:
        model = mapper.class_
        relations: dict[str, Relation] = {
            prop.key: OrmRelation(owner=model, name=prop.key, prop=prop)
            for prop in mapper.relationships
        }
        for declaration in _polymorphic_declarations(model):
            relations[declaration.name] = declaration.resolve(model, classes)

        table[model] = frozendict(relations)

    return frozendict(table)


def init_registry(relations: RelationMap) -> None:
    """Initialize the global Registry singleton.

    Call once during application startup.

    Example:
        >>> from myapp.models import Base
        >>> init_registry(get_registry(Base))
    """
    Registry(relations)
