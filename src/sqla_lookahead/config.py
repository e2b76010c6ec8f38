from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Final

from .datastructures import frozendict


DEFAULT_MAX_BATCH_SIZE: Final[int] = 500
ASSOCIATION_LOADER_FLAG: Final[str] = "association_loader"


def _default_flags() -> frozendict[str, bool]:
    return frozendict({ASSOCIATION_LOADER_FLAG: True})


@dataclass(frozen=True, slots=True)
class LoaderConfig:
    """Settings for one :class:`~sqla_lookahead.loader.BatchLoader`.

    Attributes:
        max_batch_size: Upper bound on the number of owner identities (or
            polymorphic target ids) placed in a single ``IN (...)`` clause.
        flags: Routing toggles consulted by call-sites such as
            :func:`~sqla_lookahead.fields.association_resolver`. Flags that are
            not present are disabled.
    """

    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    flags: Mapping[str, bool] = field(default_factory=_default_flags)

    def __post_init__(self) -> None:
        if self.max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {self.max_batch_size}")

        if not isinstance(self.flags, frozendict):
            object.__setattr__(self, "flags", frozendict(self.flags))

    def enabled(self, flag: str) -> bool:
        """Return whether *flag* is switched on."""
        return bool(self.flags.get(flag, False))

    def with_flags(self, **flags: bool) -> LoaderConfig:
        """Return a copy with *flags* added or replaced."""
        return dataclasses.replace(self, flags=frozendict(self.flags).union(flags))
