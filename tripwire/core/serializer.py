"""Safe, bounded serialization of captured local variables.

Turns arbitrary Python values into JSON-compatible structures that are
small enough to store with every occurrence. Sensitive names are masked,
containers are truncated, cycles are cut and no input can make
``serialize`` raise.
"""

import dataclasses
import functools
import inspect
import io
import logging
import math
import re
from collections import deque
from collections.abc import Iterable, Mapping
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from types import ModuleType
from typing import Any
from uuid import UUID

logger = logging.getLogger(__name__)

MAX_STRING_LENGTH = 500
MAX_ARRAY_LENGTH = 20
MAX_HASH_SIZE = 30
MAX_DEPTH = 4

FILTERED = "[FILTERED]"
CIRCULAR = "[CIRCULAR]"
MAX_DEPTH_MARKER = "[MAX DEPTH]"

DEFAULT_FILTER_PATTERNS: tuple[str, ...] = (
    "password",
    "passwd",
    "secret",
    "token",
    "api_key",
    "apikey",
    "access_key",
    "private_key",
    "credential",
    "auth",
    "bearer",
    "session",
    "cookie",
)


class VariableSerializer:
    """Bounded serializer for captured local variables.

    Limits are instance attributes so tests and hosts can tighten them, but
    the defaults match what the store and notifiers expect.
    """

    def __init__(
        self,
        max_string_length: int = MAX_STRING_LENGTH,
        max_array_length: int = MAX_ARRAY_LENGTH,
        max_hash_size: int = MAX_HASH_SIZE,
        max_depth: int = MAX_DEPTH,
    ):
        self.max_string_length = max_string_length
        self.max_array_length = max_array_length
        self.max_hash_size = max_hash_size
        self.max_depth = max_depth

    def serialize(
        self,
        variables: Mapping[str, Any] | None,
        filter_patterns: Iterable[str] = DEFAULT_FILTER_PATTERNS,
    ) -> dict[str, Any]:
        """Serialize a name/value mapping.

        Args:
            variables: Captured locals (or any mapping of names to values).
            filter_patterns: Case-insensitive substrings; any name containing
                one of them has its value replaced with "[FILTERED]" at every
                nesting level.

        Returns:
            JSON-compatible dict. Never raises: a failure of the whole call
            yields ``{"_serialization_error": message}``.
        """
        if not variables:
            return {}

        try:
            patterns = tuple(p.lower() for p in filter_patterns)
            seen: set[int] = set()
            result: dict[str, Any] = {}
            for name, value in variables.items():
                key = str(name)
                if self._is_sensitive(key, patterns):
                    result[key] = FILTERED
                else:
                    result[key] = self._safe_serialize(value, 0, seen, patterns)
            return result
        except Exception as e:
            logger.debug(f"Variable serialization failed: {e}", exc_info=True)
            return {"_serialization_error": str(e)}

    @staticmethod
    def _is_sensitive(name: str, patterns: tuple[str, ...]) -> bool:
        lowered = name.lower()
        return any(pattern in lowered for pattern in patterns)

    def _safe_serialize(
        self, value: Any, depth: int, seen: set[int], patterns: tuple[str, ...]
    ) -> Any:
        try:
            return self._serialize_value(value, depth, seen, patterns)
        except Exception as e:
            return f"[Error: {e}]"

    def _serialize_value(
        self, value: Any, depth: int, seen: set[int], patterns: tuple[str, ...]
    ) -> Any:
        if depth > self.max_depth:
            return MAX_DEPTH_MARKER

        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, Enum):
            return f"{type(value).__name__}.{value.name}"
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return value if math.isfinite(value) else str(value)
        if isinstance(value, (Decimal, complex, UUID, PurePath)):
            return str(value)
        if isinstance(value, str):
            return self._serialize_string(value)
        if isinstance(value, (bytes, bytearray, memoryview)):
            return f"[Binary data: {len(value)} bytes]"
        if isinstance(value, (datetime, date, time)):
            return value.isoformat()
        if isinstance(value, timedelta):
            return str(value)
        if isinstance(value, re.Pattern):
            return repr(value)
        if isinstance(value, type):
            return value.__qualname__
        if isinstance(value, ModuleType):
            return f"<module {value.__name__}>"
        if inspect.isroutine(value) or isinstance(value, functools.partial):
            name = getattr(value, "__qualname__", None) or type(value).__name__
            return f"<{type(value).__name__} {name}>"
        if isinstance(value, io.IOBase):
            state = "closed" if value.closed else "open"
            return f"<{type(value).__name__}:{state}>"
        if hasattr(value, "_asdict") and isinstance(value, tuple):
            return self._serialize_object(value, depth, seen, patterns)
        if isinstance(value, Mapping):
            return self._serialize_mapping(value, depth, seen, patterns)
        if isinstance(value, (list, tuple, set, frozenset, deque)):
            return self._serialize_sequence(value, depth, seen, patterns)
        return self._serialize_object(value, depth, seen, patterns)

    def _serialize_string(self, value: str) -> str:
        if len(value) > self.max_string_length:
            return (
                f"{value[:self.max_string_length]}... "
                f"[truncated, {len(value)} chars total]"
            )
        return value

    def _serialize_sequence(
        self, value: Any, depth: int, seen: set[int], patterns: tuple[str, ...]
    ) -> Any:
        marker = id(value)
        if marker in seen:
            return CIRCULAR
        seen.add(marker)
        try:
            items = list(value)
            result = [
                self._safe_serialize(item, depth + 1, seen, patterns)
                for item in items[: self.max_array_length]
            ]
            if len(items) > self.max_array_length:
                result.append(f"[... {len(items) - self.max_array_length} more items]")
            return result
        finally:
            seen.discard(marker)

    def _serialize_mapping(
        self, value: Mapping[Any, Any], depth: int, seen: set[int], patterns: tuple[str, ...]
    ) -> Any:
        marker = id(value)
        if marker in seen:
            return CIRCULAR
        seen.add(marker)
        try:
            return self._bounded_mapping(value, depth, seen, patterns)
        finally:
            seen.discard(marker)

    def _bounded_mapping(
        self, value: Mapping[Any, Any], depth: int, seen: set[int], patterns: tuple[str, ...]
    ) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for index, (key, item) in enumerate(value.items()):
            if index >= self.max_hash_size:
                break
            name = str(key)
            if self._is_sensitive(name, patterns):
                result[name] = FILTERED
            else:
                result[name] = self._safe_serialize(item, depth + 1, seen, patterns)
        if len(value) > self.max_hash_size:
            result["_truncated"] = f"{len(value) - self.max_hash_size} more keys"
        return result

    def _serialize_object(
        self, value: Any, depth: int, seen: set[int], patterns: tuple[str, ...]
    ) -> Any:
        marker = id(value)
        if marker in seen:
            return CIRCULAR
        seen.add(marker)
        try:
            result: dict[str, Any] = {"_class": _type_name(value)}
            data = _mapping_form(value)
            if data is not None:
                result["_data"] = self._bounded_mapping(data, depth, seen, patterns)
                return result
            attrs = _attributes(value)
            if attrs:
                result["_attrs"] = self._bounded_mapping(attrs, depth, seen, patterns)
            else:
                result["_repr"] = self._serialize_string(repr(value))
            return result
        finally:
            seen.discard(marker)


def _type_name(value: Any) -> str:
    cls = type(value)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def _mapping_form(value: Any) -> dict[str, Any] | None:
    """A shallow name/value view for record-like objects."""
    if isinstance(value, tuple) and hasattr(value, "_asdict"):
        return dict(value._asdict())
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        # Shallow: nested values go through the bounded walk.
        return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    return None


def _attributes(value: Any) -> dict[str, Any]:
    attrs: dict[str, Any] = {}
    instance_dict = getattr(value, "__dict__", None)
    if isinstance(instance_dict, dict):
        attrs.update(instance_dict)
    for cls in type(value).__mro__:
        slots = getattr(cls, "__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)
        for slot in slots:
            if slot in ("__dict__", "__weakref__") or slot in attrs:
                continue
            if hasattr(value, slot):
                attrs[slot] = getattr(value, slot)
    return attrs
