"""Path schema: a trie of dotted field paths to encryption leaf descriptors.

A schema is configured from a nested or flat mapping::

    PathSchema.build({
        "ssn": True,                        # exact field
        "address": {"street": True},        # nested object
        "phones.$": True,                   # each array element
        "tags.*": True,                     # any sub-key
        "notes": lambda op, ctx: op != "remove",
        "card": {"$options": {"keyAltName": "cards"}},  # static override
    })

A mapping is always a nested level, whatever its keys are called. Per-field
option overrides are an :class:`~aumai_autoencrypt.models.EncryptionOptions`
instance or a mapping wrapped under the reserved ``"$options"`` key.

The schema answers ``resolve(path, operation, context)`` with the concrete
options for a dotted path, or ``None`` when the path is not encrypted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Mapping, Union

from pydantic import ValidationError

from .errors import ConfigurationError, ConflictError, ResolutionError
from .models import CallContext, EncryptionOptions

__all__ = [
    "ARRAY",
    "WILDCARD",
    "OPTIONS",
    "Disabled",
    "StaticOptions",
    "Resolver",
    "SubSchema",
    "Entry",
    "PathSchema",
    "flatten",
    "validate_options",
]

logger = logging.getLogger(__name__)

ARRAY = "$"
WILDCARD = "*"
# Wraps a static per-field options override.
OPTIONS = "$options"
_SENTINELS = (ARRAY, WILDCARD)

ResolverFn = Callable[[str, CallContext], Any]


@dataclass(frozen=True)
class Disabled:
    """A leaf that is configured but switched off."""


@dataclass(frozen=True)
class StaticOptions:
    options: dict[str, Any]


@dataclass(frozen=True)
class Resolver:
    fn: ResolverFn


@dataclass(frozen=True)
class SubSchema:
    schema: PathSchema


Entry = Union[Disabled, StaticOptions, Resolver, SubSchema]


def _is_override(value: Mapping[str, Any]) -> bool:
    if OPTIONS not in value:
        return False
    if len(value) > 1:
        raise ConfigurationError(
            f"{OPTIONS!r} cannot be mixed with nested fields: {sorted(value)}"
        )
    return True


def flatten(
    config: Mapping[str, Any], prefix: str = ""
) -> Iterator[tuple[str, Any]]:
    """Yield ``(dotted_path, leaf)`` pairs from a nested schema mapping.

    Nested mappings always recurse; only ``{"$options": {...}}`` stops the
    descent and becomes a leaf.
    """
    for key, value in config.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping) and not _is_override(value):
            yield from flatten(value, path)
        else:
            yield path, value


def validate_options(value: Any) -> dict[str, Any]:
    """Check leaf options and return them as a plain mapping.

    Raises:
        ConfigurationError: If *value* isn't a mapping of valid option values.
    """
    if isinstance(value, EncryptionOptions):
        return value.model_dump(exclude_unset=True, exclude_none=True)
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"Encryption options must be a mapping, got {type(value).__name__}"
        )
    try:
        EncryptionOptions.model_validate(dict(value))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid encryption options: {exc}") from exc
    return dict(value)


def _to_entry(path: str, value: Any) -> Entry:
    if isinstance(value, bool) or value is None:
        return StaticOptions({}) if value else Disabled()
    try:
        if isinstance(value, EncryptionOptions):
            return StaticOptions(validate_options(value))
        if isinstance(value, Mapping):
            return StaticOptions(validate_options(value[OPTIONS]))
    except ConfigurationError as exc:
        raise ConfigurationError(f"{path!r}: {exc}") from exc
    if callable(value):
        return Resolver(value)
    raise ConfigurationError(
        f"Unsupported schema entry for {path!r}: {type(value).__name__}"
    )


def _is_prefix(shorter: str, longer: str) -> bool:
    return longer.startswith(f"{shorter}.")


class PathSchema:
    """Immutable trie over dotted paths.

    Each node maps one path segment to an :data:`Entry`. Build instances with
    :meth:`build`; a new configuration means a new schema.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: dict[str, Entry] | None = None) -> None:
        self._entries: dict[str, Entry] = entries or {}

    @classmethod
    def build(cls, config: Mapping[str, Any] | PathSchema | None) -> PathSchema:
        """Construct a schema, rejecting paths that contain one another."""
        if isinstance(config, PathSchema):
            return config
        root = cls()
        added: list[str] = []
        for path, value in flatten(config or {}):
            for existing in added:
                if _is_prefix(existing, path) or _is_prefix(path, existing):
                    raise ConflictError(existing, path)
            added.append(path)
            root._add(path.split("."), _to_entry(path, value))
        logger.debug("Built encryption schema with %d path(s)", len(added))
        return root

    def _add(self, parts: list[str], entry: Entry) -> None:
        head, rest = parts[0], parts[1:]
        if not rest:
            self._entries[head] = entry
            return
        child = self._entries.get(head)
        if not isinstance(child, SubSchema):
            child = SubSchema(PathSchema())
            self._entries[head] = child
        child.schema._add(rest, entry)

    def __bool__(self) -> bool:
        return bool(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def paths(self) -> list[str]:
        """All configured leaf paths, in dotted form."""
        out: list[str] = []
        for key, entry in self._entries.items():
            if isinstance(entry, SubSchema):
                out.extend(f"{key}.{sub}" for sub in entry.schema.paths())
            else:
                out.append(key)
        return out

    def get(self, key: str) -> Entry | None:
        """Find the entry governing *key*, a segment or a dotted path."""
        entry = self._entries.get(key)
        if entry is not None:
            return entry

        if key != WILDCARD:
            entry = self._entries.get(ARRAY)
            if entry is not None:
                if not isinstance(entry, SubSchema):
                    return entry
                # array.0.inner and array.$.inner both address array.$.inner
                head, _, rest = key.partition(".")
                if rest and (head == ARRAY or head.isdigit()):
                    return entry.schema.get(rest)
                return entry.schema.get(key)

        if key != ARRAY:
            entry = self._entries.get(WILDCARD)
            if entry is not None:
                return entry

        head, sep, rest = key.partition(".")
        if not sep:
            return None
        entry = self._entries.get(head)
        if isinstance(entry, SubSchema):
            return entry.schema.get(rest)
        return entry

    def child(self, key: str) -> PathSchema | None:
        """The sub-schema below *key*, if *key* leads to one."""
        entry = self.get(key)
        return entry.schema if isinstance(entry, SubSchema) else None

    def resolve(
        self,
        key: str,
        operation: str = "",
        context: CallContext | None = None,
    ) -> dict[str, Any] | None:
        """Return concrete options for *key*, or ``None`` if it isn't encrypted.

        ``True`` resolves to ``{}`` (all defaults), so test the result against
        ``None`` rather than for truthiness.
        """
        entry = self.get(key)
        if entry is None or isinstance(entry, (Disabled, SubSchema)):
            return None
        if isinstance(entry, StaticOptions):
            return dict(entry.options)
        if isinstance(entry, Resolver):
            try:
                value = entry.fn(operation, context or CallContext())
            except Exception as exc:
                raise ResolutionError(operation, key) from exc
            # an options mapping, even an empty one, means "encrypt with these"
            if isinstance(value, (EncryptionOptions, Mapping)):
                try:
                    return validate_options(value)
                except ConfigurationError as exc:
                    raise ResolutionError(operation, key) from exc
            return {} if value else None
        raise TypeError(f"Unknown schema entry: {entry!r}")
