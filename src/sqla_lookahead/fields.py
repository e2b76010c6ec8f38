from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .config import ASSOCIATION_LOADER_FLAG
from .loader import BatchLoader
from .plan import Shape


logger = logging.getLogger(__name__)

AssociationResolver = Callable[[BatchLoader, Any, "Shape | None"], Awaitable[Any]]


def association_resolver(name: str, *, flag: str = ASSOCIATION_LOADER_FLAG) -> AssociationResolver:
    """Build the resolver of a relationship field.

    The returned coroutine function goes through the batched loader when *flag*
    is enabled in the loader's config, and falls back to loading the single
    record on the spot when it is not. The choice is made per call, so flipping
    the flag only needs a new :class:`~sqla_lookahead.config.LoaderConfig`.

    Example:
        >>> resolve_comments = association_resolver("comments")
        >>> comments = await resolve_comments(loader, post, shape)
    """

    async def resolve(loader: BatchLoader, record: Any, shape: Shape | None = None) -> Any:
        if loader.config.enabled(flag):
            return await loader.request(record, name, shape)

        logger.debug("%s disabled; loading %s.%s unbatched", flag, type(record).__name__, name)
        return await loader.fetch_unbatched(record, name)

    resolve.__name__ = resolve.__qualname__ = f"resolve_{name}"

    return resolve
