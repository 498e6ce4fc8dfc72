"""In-memory MongoDB-style storage used as the host collection.

Implements the host primitives the encrypted collection wraps (find,
find_one, insert, update, remove and cursors) plus the query and update
operators the walker understands. Documents are deep-copied on the way in and
out, so callers never share state with the store.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Any, Callable, Iterator, Protocol

from .errors import DuplicateKeyError, InvalidQueryError, InvalidUpdateError

__all__ = [
    "Cursor",
    "StorageBackend",
    "InMemoryCursor",
    "InMemoryCollection",
    "InMemoryClient",
    "match_selector",
    "normalize_selector",
]

logger = logging.getLogger(__name__)

_MISSING = object()


class Cursor(Protocol):
    def fetch(self) -> list[Any]: ...

    def for_each(self, fn: Callable[[Any], Any]) -> None: ...

    def map(self, fn: Callable[[Any], Any]) -> list[Any]: ...

    def count(self) -> int: ...

    def __iter__(self) -> Iterator[Any]: ...


class StorageBackend(Protocol):
    """The host collection API an encrypted collection is composed around."""

    def find(self, selector: Any = None, options: dict[str, Any] | None = None) -> Cursor: ...

    def find_one(
        self, selector: Any = None, options: dict[str, Any] | None = None
    ) -> dict[str, Any] | None: ...

    def insert(self, document: dict[str, Any], options: dict[str, Any] | None = None) -> Any: ...

    def update(
        self,
        selector: Any,
        mutator: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> int: ...

    def remove(self, selector: Any = None, options: dict[str, Any] | None = None) -> int: ...


def normalize_selector(selector: Any) -> dict[str, Any]:
    """``None`` matches everything; a bare id means ``{"_id": id}``."""
    if selector is None:
        return {}
    if isinstance(selector, dict):
        return selector
    return {"_id": selector}


# ---------------------------------------------------------------------------
# Query matching
# ---------------------------------------------------------------------------


def _lookup(value: Any, parts: list[str]) -> list[Any]:
    """Every value reachable by *parts*, traversing arrays like MongoDB does."""
    if not parts:
        return [value]
    head, rest = parts[0], parts[1:]
    if isinstance(value, dict):
        if head in value:
            return _lookup(value[head], rest)
        return [_MISSING]
    if isinstance(value, list):
        found: list[Any] = []
        if head.isdigit() and int(head) < len(value):
            found.extend(_lookup(value[int(head)], rest))
        for element in value:
            if isinstance(element, dict):
                found.extend(v for v in _lookup(element, parts) if v is not _MISSING)
        return found or [_MISSING]
    return [_MISSING]


def _equals(candidate: Any, expected: Any) -> bool:
    if candidate is _MISSING:
        return expected is None
    if type(candidate) is type(expected) and candidate == expected:
        return True
    if isinstance(candidate, list) and not isinstance(expected, list):
        return any(_equals(element, expected) for element in candidate)
    return candidate == expected and isinstance(candidate, bool) == isinstance(expected, bool)


def _is_operator_object(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(
        isinstance(k, str) and k.startswith("$") for k in value
    )


def _match_operator(candidates: list[Any], op: str, arg: Any) -> bool:
    if op == "$eq":
        return any(_equals(c, arg) for c in candidates)
    if op == "$ne":
        return not any(_equals(c, arg) for c in candidates)
    if op in ("$in", "$nin"):
        if not isinstance(arg, list):
            raise InvalidQueryError(f"{op} needs an array")
        hit = any(_equals(c, a) for c in candidates for a in arg)
        return hit if op == "$in" else not hit
    if op == "$not":
        if not _is_operator_object(arg):
            raise InvalidQueryError("$not needs an operator object")
        return not _match_condition(candidates, arg)
    if op == "$exists":
        return bool(arg) == any(c is not _MISSING for c in candidates)
    if op == "$size":
        return any(isinstance(c, list) and len(c) == arg for c in candidates)
    raise InvalidQueryError(f"Unsupported query operator {op}")


def _match_condition(candidates: list[Any], condition: Any) -> bool:
    if _is_operator_object(condition):
        return all(_match_operator(candidates, op, arg) for op, arg in condition.items())
    return any(_equals(c, condition) for c in candidates)


def match_selector(document: dict[str, Any], selector: Any) -> bool:
    """Return ``True`` if *document* satisfies *selector*."""
    for key, condition in normalize_selector(selector).items():
        if key in ("$and", "$or", "$nor"):
            if not isinstance(condition, list):
                raise InvalidQueryError(f"{key} needs an array")
            results = (match_selector(document, sub) for sub in condition)
            if key == "$and":
                ok = all(results)
            elif key == "$or":
                ok = any(results)
            else:
                ok = not any(results)
        elif key.startswith("$"):
            raise InvalidQueryError(f"Unsupported top-level operator {key}")
        else:
            ok = _match_condition(_lookup(document, key.split(".")), condition)
        if not ok:
            return False
    return True


# ---------------------------------------------------------------------------
# Update application
# ---------------------------------------------------------------------------


def _positional_index(document: dict[str, Any], selector: dict[str, Any], array_path: str) -> int:
    array = _lookup(document, array_path.split("."))[0]
    if not isinstance(array, list):
        raise InvalidUpdateError(f"{array_path} is not an array")
    for key, condition in selector.items():
        if key == array_path:
            for index, element in enumerate(array):
                if _match_condition([element], condition):
                    return index
        elif key.startswith(f"{array_path}."):
            rest = key[len(array_path) + 1 :]
            for index, element in enumerate(array):
                if isinstance(element, dict) and _match_condition(
                    _lookup(element, rest.split(".")), condition
                ):
                    return index
    raise InvalidUpdateError(f"The positional operator did not find a match for {array_path}")


def _expand_positional(document: dict[str, Any], selector: dict[str, Any], path: str) -> str:
    parts = path.split(".")
    if "$" not in parts:
        return path
    at = parts.index("$")
    index = _positional_index(document, selector, ".".join(parts[:at]))
    parts[at] = str(index)
    return ".".join(parts)


def _container_for(document: Any, path: str, create: bool) -> tuple[Any, str | int] | None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        if isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        elif isinstance(current, dict):
            if part not in current or not isinstance(current[part], (dict, list)):
                if not create:
                    return None
                current[part] = {}
            current = current[part]
        else:
            return None
    last = parts[-1]
    if isinstance(current, list):
        if not last.isdigit():
            return None
        return current, int(last)
    if isinstance(current, dict):
        return current, last
    return None


def _set(document: dict[str, Any], path: str, value: Any) -> None:
    found = _container_for(document, path, create=True)
    if found is None:
        raise InvalidUpdateError(f"Cannot set {path}")
    container, key = found
    if isinstance(container, list):
        while len(container) <= key:  # type: ignore[operator]
            container.append(None)
    container[key] = value


def _get(document: dict[str, Any], path: str) -> Any:
    found = _container_for(document, path, create=False)
    if found is None:
        return _MISSING
    container, key = found
    if isinstance(container, list):
        return container[key] if key < len(container) else _MISSING  # type: ignore[operator]
    return container.get(key, _MISSING)


def _unset(document: dict[str, Any], path: str) -> None:
    found = _container_for(document, path, create=False)
    if found is None:
        return
    container, key = found
    if isinstance(container, list):
        if key < len(container):  # type: ignore[operator]
            container[key] = None
    else:
        container.pop(key, None)


def _array_at(document: dict[str, Any], path: str) -> list[Any]:
    current = _get(document, path)
    if current is _MISSING:
        current = []
        _set(document, path, current)
    if not isinstance(current, list):
        raise InvalidUpdateError(f"{path} is not an array")
    return current


def _each(value: Any) -> list[Any]:
    if isinstance(value, dict) and "$each" in value:
        return list(value["$each"])
    return [value]


def _pull_matches(element: Any, condition: Any) -> bool:
    if _is_operator_object(condition):
        return _match_condition([element], condition)
    if isinstance(condition, dict) and isinstance(element, dict) and element != condition:
        return match_selector(element, condition)
    return _equals(element, condition)


def apply_mutator(
    document: dict[str, Any], mutator: dict[str, Any], selector: dict[str, Any]
) -> dict[str, Any]:
    """Return a mutated copy of *document*."""
    if not _is_operator_object(mutator):
        raise InvalidUpdateError("An update must only contain $-operators")
    updated = copy.deepcopy(document)
    for op, changes in mutator.items():
        if not isinstance(changes, dict):
            raise InvalidUpdateError(f"{op} needs an object")
        for raw_path, value in changes.items():
            path = _expand_positional(updated, selector, raw_path)
            if op == "$set":
                _set(updated, path, copy.deepcopy(value))
            elif op == "$unset":
                _unset(updated, path)
            elif op == "$inc":
                current = _get(updated, path)
                _set(updated, path, (0 if current is _MISSING else current) + value)
            elif op == "$push":
                _array_at(updated, path).extend(copy.deepcopy(_each(value)))
            elif op == "$addToSet":
                array = _array_at(updated, path)
                for item in _each(value):
                    if not any(_equals(existing, item) for existing in array):
                        array.append(copy.deepcopy(item))
            elif op == "$pull":
                array = _array_at(updated, path)
                array[:] = [e for e in array if not _pull_matches(e, value)]
            else:
                raise InvalidUpdateError(f"Unsupported update operator {op}")
    return updated


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


def _project(document: dict[str, Any], fields: dict[str, Any] | None) -> dict[str, Any]:
    if not fields:
        return document
    include = [k for k, v in fields.items() if v and k != "_id"]
    if include:
        projected = {k: document[k] for k in include if k in document}
        if fields.get("_id", 1) and "_id" in document:
            projected["_id"] = document["_id"]
        return projected
    return {k: v for k, v in document.items() if fields.get(k, 1)}


class InMemoryCursor:
    """A materialised result set with the host cursor interface."""

    def __init__(self, documents: list[dict[str, Any]]) -> None:
        self._documents = documents

    def __iter__(self) -> Iterator[dict[str, Any]]:
        for document in self._documents:
            yield copy.deepcopy(document)

    def fetch(self) -> list[dict[str, Any]]:
        return list(self)

    def for_each(self, fn: Callable[[dict[str, Any]], Any]) -> None:
        for document in self:
            fn(document)

    def map(self, fn: Callable[[dict[str, Any]], Any]) -> list[Any]:
        return [fn(document) for document in self]

    def count(self) -> int:
        return len(self._documents)


class InMemoryCollection:
    """A thread-safe document collection."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._documents: dict[Any, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _matching(self, selector: Any) -> list[dict[str, Any]]:
        return [d for d in self._documents.values() if match_selector(d, selector)]

    def find(
        self, selector: Any = None, options: dict[str, Any] | None = None
    ) -> InMemoryCursor:
        options = options or {}
        with self._lock:
            documents = self._matching(selector)
        for field, direction in reversed(list((options.get("sort") or {}).items())):
            documents.sort(
                key=lambda d: (d.get(field) is None, d.get(field)),
                reverse=direction < 0,
            )
        skip = options.get("skip") or 0
        limit = options.get("limit") or 0
        documents = documents[skip : skip + limit if limit else None]
        fields = options.get("fields")
        return InMemoryCursor([_project(d, fields) for d in documents])

    def find_one(
        self, selector: Any = None, options: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        options = dict(options or {}, limit=1)
        results = self.find(selector, options).fetch()
        return results[0] if results else None

    def insert(self, document: dict[str, Any], options: dict[str, Any] | None = None) -> Any:
        document = copy.deepcopy(document)
        document.setdefault("_id", uuid.uuid4().hex)
        key = _identity(document["_id"])
        with self._lock:
            if key in self._documents:
                raise DuplicateKeyError(
                    f"Duplicate _id {document['_id']!r} in {self.name}"
                )
            self._documents[key] = document
        return document["_id"]

    def update(
        self,
        selector: Any,
        mutator: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> int:
        """Apply *mutator* to the first (or, with ``multi``, every) match."""
        options = options or {}
        selector = normalize_selector(selector)
        with self._lock:
            matches = self._matching(selector)
            if not options.get("multi"):
                matches = matches[:1]
            for document in matches:
                updated = apply_mutator(document, mutator, selector)
                self._documents[_identity(document["_id"])] = updated
        if not matches and options.get("upsert"):
            seed = {
                k: copy.deepcopy(v)
                for k, v in selector.items()
                if not k.startswith("$") and "." not in k and not _is_operator_object(v)
            }
            self.insert(apply_mutator(seed, mutator, selector))
            return 1
        return len(matches)

    def remove(self, selector: Any = None, options: dict[str, Any] | None = None) -> int:
        with self._lock:
            matches = self._matching(selector)
            for document in matches:
                del self._documents[_identity(document["_id"])]
        return len(matches)


def _identity(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        raise InvalidQueryError("_id must be a scalar")
    return (type(value).__name__, value)


class InMemoryClient:
    """A connection holding named databases of in-memory collections."""

    def __init__(self) -> None:
        self._collections: dict[str, InMemoryCollection] = {}
        self._lock = threading.Lock()

    def collection(self, database: str, name: str) -> InMemoryCollection:
        namespace = f"{database}.{name}"
        with self._lock:
            collection = self._collections.get(namespace)
            if collection is None:
                logger.debug("Creating in-memory collection %s", namespace)
                collection = self._collections[namespace] = InMemoryCollection(namespace)
        return collection

    def key_vault(self, namespace: str) -> InMemoryCollection:
        """The collection holding data keys for ``"<db>.<collection>"``."""
        database, _, name = namespace.partition(".")
        return self.collection(database, name)
