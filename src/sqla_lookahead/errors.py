from __future__ import annotations

from typing import Any


class LookaheadError(Exception):
    """Base class for every error raised by sqla_lookahead."""


class UnknownRelationshipError(LookaheadError):
    """A relationship name is not declared on the owner model.

    This is a schema/programmer error: it aborts the batch that hit it and is
    never retried.
    """

    def __init__(self, model: type[Any], name: str) -> None:
        self.model = model
        self.name = name
        super().__init__(f"Relationship {name!r} not found on {model.__name__}")


class MalformedShapeError(LookaheadError):
    """A shape asked to preload an attribute that is not a relationship.

    Raised when a shape node carries sub-selections (so the plan builder treated
    it as an association) but the target model declares it as a column or some
    other plain attribute.
    """

    def __init__(self, model: type[Any], name: str) -> None:
        self.model = model
        self.name = name
        super().__init__(
            f"{model.__name__}.{name} has sub-selections but is not a relationship"
        )


class StorageError(LookaheadError):
    """The database failed while a batch was being fetched.

    The driver exception is available as ``__cause__``.
    """
