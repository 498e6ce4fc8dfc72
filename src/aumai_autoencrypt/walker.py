"""Structural walker: applies a transform at the leaves a schema designates.

The walker descends a stored document, a selector or a mutator in lock-step
with a :class:`~aumai_autoencrypt.schema.PathSchema`, recognising a fixed set
of query/update operators. It never mutates its input; every call returns a
structurally congruent copy.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Callable

from .models import CallContext, EncryptionOptions, EncryptionSettings
from .schema import ARRAY, PathSchema

__all__ = [
    "PASSTHROUGH_OPERATORS",
    "LOGICAL_OPERATORS",
    "NESTED_OPERATORS",
    "SUPPORTED_OPERATORS",
    "OperatorKind",
    "classify",
    "Transform",
    "StructuralWalker",
]

logger = logging.getLogger(__name__)

# Constrain shape, not value: never transformed.
PASSTHROUGH_OPERATORS = frozenset({"$exists", "$size"})
# Sequences of sub-expressions at the same field level.
LOGICAL_OPERATORS = frozenset({"$and", "$or", "$nor"})
# Wrap the field's own value (or a sequence of candidate values).
NESTED_OPERATORS = frozenset({"$in", "$nin", "$not", "$eq", "$ne", "$each"})
SUPPORTED_OPERATORS = PASSTHROUGH_OPERATORS | LOGICAL_OPERATORS | NESTED_OPERATORS

Transform = Callable[[Any, EncryptionOptions, Any], Any]
ClientLookup = Callable[[EncryptionOptions], Any]


class OperatorKind(enum.Enum):
    PASSTHROUGH = "passthrough"
    LOGICAL = "logical"
    NESTED_VALUE = "nested-value"
    IMPLICIT_CONTAINER = "implicit-container"
    FIELD = "field"


def classify(key: Any, value: Any) -> OperatorKind:
    """Decide how the walker treats one ``key: value`` pair."""
    if key in PASSTHROUGH_OPERATORS:
        return OperatorKind.PASSTHROUGH
    # An operator over a bare value ({"$eq": "x"}) is the field value itself.
    if key in LOGICAL_OPERATORS and isinstance(value, (list, tuple)):
        return OperatorKind.LOGICAL
    if key in NESTED_OPERATORS and isinstance(value, (dict, list, tuple)):
        return OperatorKind.NESTED_VALUE
    if isinstance(value, dict) and any(k in SUPPORTED_OPERATORS for k in value):
        return OperatorKind.IMPLICIT_CONTAINER
    return OperatorKind.FIELD


class StructuralWalker:
    """Walks one payload for one operation.

    Args:
        transform: Called as ``transform(client, options, value)`` at every
            matched leaf; its return value replaces the leaf.
        settings: The call's base configuration; leaf options merge over it.
        client_for: Returns a ready encryption client for merged options.
        operation: Operation name handed to schema resolvers.
        context: Call context handed to schema resolvers.
        is_query: ``True`` for selectors and mutators. Enables matching a
            scalar against the per-element form of an array field.
    """

    def __init__(
        self,
        transform: Transform,
        settings: EncryptionSettings,
        client_for: ClientLookup,
        operation: str,
        context: CallContext,
        is_query: bool = False,
    ) -> None:
        self._transform = transform
        self._settings = settings
        self._client_for = client_for
        self._operation = operation
        self._context = context
        self._is_query = is_query

    def walk(
        self,
        value: Any,
        schema: PathSchema | None,
        actual_key: str | None = None,
    ) -> Any:
        """Return a copy of *value* with every designated leaf transformed.

        *actual_key* is the field an operator container applies to; while it
        is set, nested operators resolve against that field instead of their
        own names.
        """
        if schema is None:
            return value
        if isinstance(value, dict):
            out: Any = {}
            items: Any = value.items()
        elif isinstance(value, (list, tuple)):
            out = [None] * len(value)
            items = enumerate(value)
        else:
            return value

        for key, item in items:
            out[key] = self._walk_item(key, item, schema, actual_key)
        return out

    def _walk_item(
        self,
        key: Any,
        item: Any,
        schema: PathSchema,
        actual_key: str | None,
    ) -> Any:
        kind = classify(key, item)
        if kind is OperatorKind.PASSTHROUGH:
            return item
        if kind is OperatorKind.LOGICAL:
            return [self.walk(sub, schema, actual_key) for sub in item]
        if kind is OperatorKind.NESTED_VALUE:
            return self.walk(item, schema, actual_key)
        if kind is OperatorKind.IMPLICIT_CONTAINER:
            return self.walk(item, schema, key)
        if kind is OperatorKind.FIELD:
            return self._walk_field(key, item, schema, actual_key)
        raise AssertionError(f"Unhandled operator kind: {kind}")

    def _walk_field(
        self,
        key: Any,
        item: Any,
        schema: PathSchema,
        actual_key: str | None,
    ) -> Any:
        if actual_key is not None:
            lookup = actual_key
        elif isinstance(key, int):
            lookup = ARRAY
        else:
            lookup = key

        options = schema.resolve(lookup, self._operation, self._context)
        if options is None and self._is_query and not isinstance(item, (list, tuple)):
            # {"field": x} against a schema that only declares "field.$"
            element_schema = schema.child(lookup)
            if element_schema is not None:
                options = element_schema.resolve(ARRAY, self._operation, self._context)

        if options is not None:
            merged = self._settings.merged(options)
            client = self._client_for(merged)
            return self._transform(client, merged, item)
        if isinstance(item, (dict, list, tuple)):
            return self.walk(item, schema.child(lookup))
        return item
