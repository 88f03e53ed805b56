"""
Query Cache Keys
================

Deterministic, collision-resistant cache keys for document-store queries.

Key format (persisted in durable stores, so treat it as a wire format):

    <kind>:<collection>:<sha256 hex digest>     query / count / exists
    doc:<collection>:<document id>
    batch:<sha256 hex digest>

The digest covers the canonicalized query descriptor plus an algorithm
version token. Bumping ``KEY_ALGORITHM_VERSION`` retires every old key
without changing the visible prefix.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import re
from collections.abc import Iterable, Mapping
from datetime import date, time
from decimal import Decimal
from enum import Enum
from functools import partial
from pathlib import PurePath
from types import BuiltinFunctionType, CodeType, FunctionType, MethodType, ModuleType
from typing import Any
from uuid import UUID

from querycache.caching.descriptor import QueryDescriptor

KEY_ALGORITHM_VERSION = "1.0"
DEFAULT_MAX_DEPTH = 10

# Mapping entry naming the class of a canonicalized object
TYPE_MARKER = "<type>"


class CacheKeyKind(Enum):
    """Key namespaces."""

    QUERY = "query"
    DOCUMENT = "doc"
    COUNT = "count"
    EXISTS = "exists"
    BATCH = "batch"


# Collections may contain anything but separators and whitespace
_COLLECTION = r"[^:\s]+"

_VALID_KEY_PATTERNS = (
    re.compile(rf"^query:{_COLLECTION}:[a-f0-9]{{64}}$"),
    re.compile(rf"^doc:{_COLLECTION}:[A-Za-z0-9_\-]+$"),
    re.compile(rf"^count:{_COLLECTION}:[a-f0-9]{{64}}$"),
    re.compile(rf"^exists:{_COLLECTION}:[a-f0-9]{{64}}$"),
    re.compile(r"^batch:[a-f0-9]{64}$"),
)

_COLLECTION_PATTERN = re.compile(rf"^(?:query|doc|count|exists):({_COLLECTION}):")

_CALLABLE_TYPES = (FunctionType, BuiltinFunctionType, MethodType, partial)

# repr() of objects without a value-based repr embeds their memory address
_MEMORY_ADDRESS = re.compile(r"\bat 0x[0-9a-fA-F]+")


class KeyDeriver:
    """
    Turns (collection, descriptor) pairs into stable string keys.

    Derivation is total: cyclic structures and structures nested deeper
    than ``max_depth`` are replaced by finite marker values, so it always
    terminates and never raises.
    """

    def __init__(
        self,
        max_depth: int = DEFAULT_MAX_DEPTH,
        version: str = KEY_ALGORITHM_VERSION,
    ) -> None:
        self._max_depth = max_depth
        self._version = version

    @property
    def version(self) -> str:
        return self._version

    def derive_query_key(self, collection: str, descriptor: Any) -> str:
        """Key for a query returning documents."""
        return self._derive(CacheKeyKind.QUERY, collection, descriptor)

    def derive_count_key(self, collection: str, descriptor: Any) -> str:
        """Key for a count aggregation."""
        return self._derive(CacheKeyKind.COUNT, collection, descriptor)

    def derive_exists_key(self, collection: str, descriptor: Any) -> str:
        """Key for an existence check."""
        return self._derive(CacheKeyKind.EXISTS, collection, descriptor)

    def derive_document_key(self, collection: str, document_id: str) -> str:
        """Key for a single document; ids are already short and unique."""
        return f"{CacheKeyKind.DOCUMENT.value}:{collection}:{document_id}"

    def derive_batch_key(self, paths: Iterable[str]) -> str:
        """Key for a batch read. Path order never affects the result."""
        ordered = sorted({str(path) for path in paths})
        digest = self._digest(
            {
                "kind": CacheKeyKind.BATCH.value,
                "paths": ordered,
                "version": self._version,
            }
        )
        return f"{CacheKeyKind.BATCH.value}:{digest}"

    def canonicalize(self, value: Any) -> Any:
        """Normalize ``value`` into sorted, finite, JSON-safe data."""
        return self._canonicalize(value, 0, set())

    def _derive(self, kind: CacheKeyKind, collection: str, descriptor: Any) -> str:
        if isinstance(descriptor, QueryDescriptor):
            descriptor = descriptor.to_key_data()

        digest = self._digest(
            {
                "collection": collection,
                "kind": kind.value,
                "query": self.canonicalize(descriptor),
                "version": self._version,
            }
        )
        return f"{kind.value}:{collection}:{digest}"

    def _digest(self, payload: Any) -> str:
        serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(serialized.encode("utf-8")).hexdigest()

    def _canonicalize(self, value: Any, depth: int, visiting: set[int]) -> Any:
        # Enum first: str/int enums would otherwise pass as scalars
        if isinstance(value, Enum):
            return self._canonicalize(value.value, depth, visiting)
        if value is None or isinstance(value, (str, bool, int, float)):
            return value
        if isinstance(value, (date, time)):
            return value.isoformat()
        if isinstance(value, (Decimal, UUID, PurePath)):
            return str(value)
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).hex()

        if depth > self._max_depth:
            return {"max_depth_reached": True}

        marker = id(value)
        if marker in visiting:
            return {"circular_reference": type(value).__name__}

        visiting.add(marker)
        try:
            return self._canonicalize_container(value, depth, visiting)
        except Exception:
            # A hostile __iter__ or property must not break derivation
            return {"unrepresentable": type(value).__name__}
        finally:
            visiting.discard(marker)

    def _canonicalize_container(self, value: Any, depth: int, visiting: set[int]) -> Any:
        if isinstance(value, Mapping):
            return self._canonicalize_mapping(value, depth, visiting)

        if isinstance(value, (set, frozenset)):
            members = [self._canonicalize(item, depth + 1, visiting) for item in value]
            return sorted(members, key=_sort_token)

        if isinstance(value, (list, tuple)):
            return [self._canonicalize(item, depth + 1, visiting) for item in value]

        if isinstance(value, type):
            return {"<class>": _qualified_name(value)}

        if isinstance(value, ModuleType):
            return {"<module>": value.__name__}

        if isinstance(value, _CALLABLE_TYPES):
            return self._canonicalize_callable(value, depth, visiting)

        if dataclasses.is_dataclass(value):
            fields = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
            return self._canonicalize_mapping(fields, depth, visiting, _qualified_name(type(value)))

        state = _object_state(value)
        if state is not None:
            return self._canonicalize_mapping(state, depth, visiting, _qualified_name(type(value)))

        text = repr(value)
        if _MEMORY_ADDRESS.search(text):
            return {"unrepresentable": type(value).__name__}
        return text

    def _canonicalize_callable(self, value: Any, depth: int, visiting: set[int]) -> Any:
        """Identify a callable by what it runs, not by where it lives in memory."""
        if isinstance(value, partial):
            return {
                "<partial>": self._canonicalize(value.func, depth + 1, visiting),
                "args": self._canonicalize(value.args, depth + 1, visiting),
                "keywords": self._canonicalize(value.keywords, depth + 1, visiting),
            }

        if isinstance(value, MethodType):
            return {
                "<method>": self._canonicalize(value.__func__, depth + 1, visiting),
                "self": self._canonicalize(value.__self__, depth + 1, visiting),
            }

        token: dict[str, Any] = {"<callable>": _qualified_name(value)}

        code = getattr(value, "__code__", None)
        if isinstance(code, CodeType):
            token["code"] = _code_digest(code)
            token["defaults"] = self._canonicalize(value.__defaults__, depth + 1, visiting)
            token["kwdefaults"] = self._canonicalize(value.__kwdefaults__, depth + 1, visiting)
            token["closure"] = [
                self._canonicalize(_cell_value(cell), depth + 1, visiting)
                for cell in value.__closure__ or ()
            ]
            return token

        # Builtins bound to an instance, e.g. [].append
        owner = getattr(value, "__self__", None)
        if owner is not None and not isinstance(owner, ModuleType):
            token["self"] = self._canonicalize(owner, depth + 1, visiting)
        return token

    def _canonicalize_mapping(
        self,
        mapping: Mapping[Any, Any],
        depth: int,
        visiting: set[int],
        type_name: str | None = None,
    ) -> dict[str, Any]:
        normalized = {
            _key_token(key): self._canonicalize(item, depth + 1, visiting)
            for key, item in mapping.items()
        }
        if type_name is not None:
            normalized[TYPE_MARKER] = type_name
        return dict(sorted(normalized.items()))


def _key_token(key: Any) -> str:
    # Plain string keys never start with "<", so typed tokens cannot collide with them
    if isinstance(key, Enum):
        key = key.value
    if isinstance(key, str):
        return f"<str>{key}" if key.startswith("<") else key
    return f"<{type(key).__name__}>{key!r}"


def _sort_token(item: Any) -> str:
    return json.dumps(item, sort_keys=True, separators=(",", ":"))


def _qualified_name(value: Any) -> str:
    module = getattr(value, "__module__", None)
    name = getattr(value, "__qualname__", None) or getattr(value, "__name__", None)
    name = name or type(value).__name__
    return f"{module}.{name}" if module else name


def _object_state(value: Any) -> dict[str, Any] | None:
    """Instance attributes from ``__slots__`` and ``__dict__``, or None if it has neither."""
    state: dict[str, Any] = {}
    has_state = False

    for klass in type(value).__mro__:
        slots = klass.__dict__.get("__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)
        for slot in slots:
            if slot in ("__dict__", "__weakref__"):
                continue
            has_state = True
            # Private slots are stored under their mangled name
            attribute = slot
            if slot.startswith("__") and not slot.endswith("__"):
                attribute = f"_{klass.__name__.lstrip('_')}{slot}"
            if attribute not in state and hasattr(value, attribute):
                state[attribute] = getattr(value, attribute)

    instance_dict = getattr(value, "__dict__", None)
    if isinstance(instance_dict, Mapping):
        has_state = True
        state.update(instance_dict)

    return state if has_state else None


def _cell_value(cell: Any) -> Any:
    try:
        return cell.cell_contents
    except ValueError:
        return {"empty_cell": True}


def _code_digest(code: CodeType) -> str:
    """Digest of a code object's bytecode, names and constants."""
    payload = {
        "bytecode": code.co_code.hex(),
        "names": list(code.co_names),
        "constants": [_constant_token(constant) for constant in code.co_consts],
    }
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _constant_token(constant: Any) -> Any:
    if isinstance(constant, CodeType):
        return {"code": _code_digest(constant)}
    if isinstance(constant, tuple):
        return [_constant_token(item) for item in constant]
    if isinstance(constant, frozenset):
        return sorted((_constant_token(item) for item in constant), key=_sort_token)
    return f"{type(constant).__name__}:{constant!r}"


# Default deriver used by the module-level helpers
_default_deriver = KeyDeriver()


def derive_query_key(collection: str, descriptor: Any) -> str:
    return _default_deriver.derive_query_key(collection, descriptor)


def derive_count_key(collection: str, descriptor: Any) -> str:
    return _default_deriver.derive_count_key(collection, descriptor)


def derive_exists_key(collection: str, descriptor: Any) -> str:
    return _default_deriver.derive_exists_key(collection, descriptor)


def derive_document_key(collection: str, document_id: str) -> str:
    return _default_deriver.derive_document_key(collection, document_id)


def derive_batch_key(paths: Iterable[str]) -> str:
    return _default_deriver.derive_batch_key(paths)


def is_valid_key(key: str) -> bool:
    """Check that ``key`` has one of the known key shapes."""
    return any(pattern.match(key) for pattern in _VALID_KEY_PATTERNS)


def extract_collection(key: str) -> str | None:
    """Recover the collection from a query/doc/count/exists key."""
    match = _COLLECTION_PATTERN.match(key)
    return match.group(1) if match else None


def collection_pattern(collection: str) -> str:
    """Glob matching every key of ``collection`` (for pattern-scanning stores)."""
    return f"*:{collection}:*"
