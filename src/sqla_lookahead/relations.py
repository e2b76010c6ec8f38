from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union, overload

import sqlalchemy as sa
from sqlalchemy import orm
from sqlalchemy.orm.attributes import NO_VALUE, set_committed_value

from .datastructures import frozendict
from .tools import get_primary_keys


@dataclass(frozen=True, slots=True)
class OrmRelation:
    """A relationship declared with ``orm.relationship()``.

    The slot lives in the instance state: it is unloaded until populated, and
    populated values are written with ``set_committed_value`` so no change
    history is produced.
    """

    owner: type[Any]
    name: str
    prop: orm.RelationshipProperty[Any]

    @property
    def uselist(self) -> bool:
        return bool(self.prop.uselist)

    @property
    def target(self) -> type[Any]:
        return self.prop.mapper.class_

    @property
    def order_by(self) -> tuple[Any, ...]:
        """Ordering declared with ``relationship(order_by=...)``, empty when none."""
        return tuple(self.prop.order_by or ())

    def is_loaded(self, record: object) -> bool:
        return self.name not in sa.inspect(record).unloaded

    def get(self, record: object) -> Any:
        value = sa.inspect(record).attrs[self.name].loaded_value
        if value is NO_VALUE:
            raise AttributeError(f"{self.owner.__name__}.{self.name} is not loaded")

        return value

    def set(self, record: object, value: Any) -> None:
        set_committed_value(record, self.name, value)

    def values(self, record: object) -> list[Any]:
        value = self.get(record)
        if self.uselist:
            return list(value)

        return [] if value is None else [value]


@dataclass(frozen=True, slots=True)
class PolymorphicRelation:
    """A to-one reference whose target model is chosen per record.

    ``type_attr`` holds the discriminator and ``id_attr`` the primary key of the
    referenced row. Discriminators missing from ``targets`` resolve to nothing;
    such records end up with a loaded ``None`` slot.
    """

    owner: type[Any]
    name: str
    type_attr: str
    id_attr: str
    targets: frozendict[str, type[Any]]

    uselist = False

    @property
    def slot(self) -> str:
        return _slot_name(self.name)

    def target_for(self, discriminator: str | None) -> type[Any] | None:
        if discriminator is None:
            return None

        return self.targets.get(discriminator)

    def is_loaded(self, record: object) -> bool:
        return self.slot in vars(record)

    def get(self, record: object) -> Any:
        try:
            return vars(record)[self.slot]
        except KeyError:
            raise AttributeError(f"{self.owner.__name__}.{self.name} is not loaded") from None

    def set(self, record: object, value: Any) -> None:
        vars(record)[self.slot] = value

    def values(self, record: object) -> list[Any]:
        value = self.get(record)
        return [] if value is None else [value]


Relation = Union[OrmRelation, PolymorphicRelation]


def _slot_name(name: str) -> str:
    return f"_lookahead_{name}"


class polymorphic:  # noqa: N801
    """Declare a polymorphic to-one relationship on a mapped class.

    SQLAlchemy has no native "generic foreign key"; this descriptor records the
    discriminator and id attributes so :func:`~sqla_lookahead.registry.get_registry`
    can register the relationship, and exposes the loaded value on instances.

    Example:
        >>> class Comment(Base):
        ...     author_type: orm.Mapped[str]
        ...     author_id: orm.Mapped[int]
        ...     author = polymorphic("author_type", "author_id", targets=("Author", "User"))

    ``targets`` is either a sequence of class names (the discriminator stores the
    class name) or a mapping from discriminator value to class or class name.
    Names are resolved against the declarative registry when the registry is
    built.
    """

    __slots__ = ("id_attr", "name", "targets", "type_attr")

    def __init__(
        self,
        type_attr: str,
        id_attr: str,
        *,
        targets: Sequence[str] | Mapping[str, str | type[Any]],
    ) -> None:
        self.type_attr = type_attr
        self.id_attr = id_attr
        self.targets = targets
        self.name = ""

    def __set_name__(self, owner: type[Any], name: str) -> None:
        self.name = name

    @overload
    def __get__(self, instance: None, owner: type[Any]) -> polymorphic: ...

    @overload
    def __get__(self, instance: object, owner: type[Any]) -> Any: ...

    def __get__(self, instance: object | None, owner: type[Any]) -> Any:
        if instance is None:
            return self

        try:
            return vars(instance)[_slot_name(self.name)]
        except KeyError:
            raise AttributeError(f"{owner.__name__}.{self.name} is not loaded") from None

    def resolve(
        self,
        owner: type[Any],
        classes: Mapping[str, type[Any]] | Callable[[str], type[Any] | None],
    ) -> PolymorphicRelation:
        """Bind the declaration to concrete mapped classes.

        Raises:
            ValueError: If a target name is not a mapped class, or a target has a
                composite primary key.
        """
        lookup = classes.get if isinstance(classes, Mapping) else classes
        pairs = (
            self.targets.items()
            if isinstance(self.targets, Mapping)
            else ((target, target) for target in self.targets)
        )
        resolved: dict[str, type[Any]] = {}
        for discriminator, target in pairs:
            cls = lookup(target) if isinstance(target, str) else target
            if cls is None:
                raise ValueError(
                    f"Unknown target {target!r} for {owner.__name__}.{self.name}"
                )
            if len(get_primary_keys(cls)) != 1:
                raise ValueError(
                    f"Polymorphic target {cls.__name__} must have a single-column primary key"
                )
            resolved[discriminator] = cls

        return PolymorphicRelation(
            owner=owner,
            name=self.name,
            type_attr=self.type_attr,
            id_attr=self.id_attr,
            targets=frozendict(resolved),
        )
