"""
Query Descriptors
=================

The explicit, structural description of one cacheable query operation.

Query executors expose their state through ``describe()`` instead of having
their internals inspected, so renaming a private attribute never changes the
cache keys that get derived from it.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True)
class FilterClause:
    """A single ``field <operator> value`` condition."""

    field: str
    operator: str
    value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class Ordering:
    """A sort instruction."""

    field: str
    direction: str = "asc"

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "direction": self.direction.lower()}


@dataclass
class QueryDescriptor:
    """
    Everything that makes two query executions produce the same result.

    ``method`` separates operations over an otherwise identical filter set
    (``fetch`` vs ``count`` vs ``exists``). ``arguments`` carries the
    method-specific parameters. ``extras`` holds executor-specific state such
    as cursors or a distinct flag.
    """

    collection: str
    method: str = "fetch"
    filters: list[FilterClause] = field(default_factory=list)
    orderings: list[Ordering] = field(default_factory=list)
    limit: int | None = None
    offset: int | None = None
    columns: frozenset[str] = field(default_factory=lambda: frozenset({"*"}))
    arguments: Any = None
    extras: dict[str, Any] = field(default_factory=dict)

    def for_operation(self, method: str, arguments: Iterable[Any] | None = None) -> QueryDescriptor:
        """Return a copy describing ``method`` called with ``arguments``."""
        return replace(
            self,
            method=method,
            arguments=list(arguments) if arguments is not None else [],
        )

    def to_key_data(self) -> dict[str, Any]:
        """Flatten into the plain structure fed to key derivation."""
        return {
            "method": self.method,
            "filters": [clause.to_dict() for clause in self.filters],
            "orderings": [ordering.to_dict() for ordering in self.orderings],
            "limit": self.limit,
            "offset": self.offset,
            "columns": set(self.columns),
            "arguments": self.arguments,
            "extras": dict(self.extras),
        }
