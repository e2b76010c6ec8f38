"""Lookahead-driven batched relationship loading for SQLAlchemy.

sqla_lookahead resolves nested relationship fields without N+1 queries.
Initialize the ``Registry`` singleton at startup with your declarative base,
create one ``BatchLoader`` per root query, and call
``loader.request(record, "relationship", shape)`` from field resolvers.
Requests issued in the same event-loop tick are grouped per model and
relationship, their lookahead shapes are merged into one preload plan, and the
plan is loaded with one statement per level.
"""

from ._version import __version__, __version_tuple__
from .config import ASSOCIATION_LOADER_FLAG, DEFAULT_MAX_BATCH_SIZE, LoaderConfig
from .connection import Connection, Edge, PageInfo, scoped_relation
from .datastructures import frozendict
from .errors import LookaheadError, MalformedShapeError, StorageError, UnknownRelationshipError
from .fetcher import AssociationFetcher
from .fields import association_resolver
from .ledger import Ledger, Signature
from .loader import BatchLoader
from .plan import BARE, Bare, Nested, Plan, Shape, build_plan, merge_plans, plan_for_shape
from .registry import Registry, get_registry, init_registry
from .relations import OrmRelation, PolymorphicRelation, polymorphic
from .selection import shape_from_info, shape_from_selection
from .tools import add_conditions, get_identity, lookahead_cache_clear, lookahead_cache_info


__all__ = (
    "ASSOCIATION_LOADER_FLAG",
    "BARE",
    "DEFAULT_MAX_BATCH_SIZE",
    "AssociationFetcher",
    "Bare",
    "BatchLoader",
    "Connection",
    "Edge",
    "Ledger",
    "LoaderConfig",
    "LookaheadError",
    "MalformedShapeError",
    "Nested",
    "OrmRelation",
    "PageInfo",
    "Plan",
    "PolymorphicRelation",
    "Registry",
    "Shape",
    "Signature",
    "StorageError",
    "UnknownRelationshipError",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "association_resolver",
    "build_plan",
    "frozendict",
    "get_identity",
    "get_registry",
    "init_registry",
    "lookahead_cache_clear",
    "lookahead_cache_info",
    "merge_plans",
    "plan_for_shape",
    "polymorphic",
    "scoped_relation",
    "shape_from_info",
    "shape_from_selection",
)
