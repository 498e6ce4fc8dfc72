"""Core logic for aumai-autoencrypt: the encrypted collection facade."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator, Mapping

from .cache import EncryptionProviderCache, default_cache
from .errors import AutoEncryptError, ConfigurationError, ProviderError, ResolutionError
from .models import CallContext, EncryptionOptions, EncryptionSettings
from .provider import EncryptionClient
from .schema import PathSchema
from .storage import Cursor, StorageBackend
from .walker import StructuralWalker, Transform

__all__ = [
    "MUTATOR_OPERATORS",
    "FieldEncryptor",
    "EncryptedCursor",
    "EncryptedCollection",
]

logger = logging.getLogger(__name__)

# Mutator operators whose values carry field values to encrypt.
MUTATOR_OPERATORS = frozenset({"$set", "$push", "$addToSet", "$pull"})

ConfigResolver = Callable[[str, CallContext], Any]


class FieldEncryptor:
    """
    Encrypts and decrypts single field values through an encryption client.

    Data keys are looked up (and created on first use) through the shared
    provider cache, so every value encrypted under the same ``keyAltName``
    uses the same data key.
    """

    def __init__(self, cache: EncryptionProviderCache | None = None) -> None:
        self._cache = cache or default_cache

    def encrypt(
        self, client: EncryptionClient, options: EncryptionOptions, value: Any
    ) -> bytes:
        """Encrypt *value* under the data key named by ``options.key_alt_name``."""
        record = self._cache.data_key(
            client, options.provider, options.master_key, options.key_alt_name
        )
        try:
            return client.encrypt(value, options.algorithm, key_id=record.key_id)
        except AutoEncryptError:
            raise
        except Exception as exc:
            raise ProviderError(f"Encryption failed: {exc}") from exc

    def decrypt(
        self, client: EncryptionClient, options: EncryptionOptions, value: Any
    ) -> Any:
        """
        Decrypt *value*.

        With ``safe`` set, values that are not encrypted binary (written before
        the field was encrypted) are returned unchanged.
        """
        if options.safe and not isinstance(value, (bytes, bytearray, memoryview)):
            return value
        try:
            return client.decrypt(value)
        except AutoEncryptError:
            raise
        except Exception as exc:
            raise ProviderError(f"Decryption failed: {exc}") from exc


def _split_config(
    config: EncryptionOptions | Mapping[str, Any] | None,
) -> tuple[dict[str, Any], Any]:
    if config is None:
        return {}, None
    if isinstance(config, EncryptionSettings):
        return config.model_dump(exclude_unset=True, exclude_none=True), config.path_schema
    if isinstance(config, EncryptionOptions):
        return config.model_dump(exclude_unset=True, exclude_none=True), None
    options = {k: v for k, v in config.items() if k != "schema" and v is not None}
    return options, config.get("schema")


class EncryptedCursor:
    """Decrypts each document of a host cursor as it is read."""

    def __init__(
        self,
        collection: EncryptedCollection,
        cursor: Cursor,
        settings: EncryptionSettings | None,
        context: CallContext,
    ) -> None:
        self._collection = collection
        self._cursor = cursor
        self._settings = settings
        self._context = context
        self._fast = bool((context.options or {}).get("fastAutoEncryption"))

    def _read(self, document: Any, operation: str) -> Any:
        return self._collection._read_result(
            document,
            operation,
            operation,
            self._context,
            self._settings if self._fast else None,
        )

    def __iter__(self) -> Iterator[Any]:
        for document in self._cursor:
            yield self._read(document, "fetch")

    def fetch(self) -> list[Any]:
        return [self._read(document, "fetch") for document in self._cursor.fetch()]

    def for_each(self, fn: Callable[[Any], Any]) -> None:
        self._cursor.for_each(lambda document: fn(self._read(document, "forEach")))

    def map(self, fn: Callable[[Any], Any]) -> list[Any]:
        return self._cursor.map(lambda document: fn(self._read(document, "map")))

    def count(self) -> int:
        return self._cursor.count()


class EncryptedCollection:
    """
    Wraps a host collection so reads and writes are encrypted field by field.

    Configuration is either static::

        collection.configure_encryption({
            "keyVaultNamespace": "app.keyVault",
            "kmsProviders": {"local": {"key": master_key}},
            "keyAltName": "default",
        }, extend=False)
        collection.configure_encryption({"schema": {"ssn": True}})

    or a resolver ``fn(operation, context)`` returning ``{"schema": ..., **options}``
    for every call, layered over the base options.

    Args:
        backend: The host collection (find/find_one/insert/update/remove).
        connection: The connection whose key vault holds the data keys.
        encryption: Initial base configuration, as for ``configure_encryption``.
        cache: Provider cache; defaults to the process-wide cache.
        transform: Applied to every document returned by a read, after
            decryption.
    """

    def __init__(
        self,
        backend: StorageBackend,
        connection: Any = None,
        encryption: EncryptionOptions | Mapping[str, Any] | ConfigResolver | None = None,
        cache: EncryptionProviderCache | None = None,
        transform: Callable[[Any], Any] | None = None,
    ) -> None:
        self._backend = backend
        self._connection = connection
        self._cache = cache or default_cache
        self._encryptor = FieldEncryptor(self._cache)
        self._transform = transform
        self._base: EncryptionOptions | None = None
        self._static: EncryptionSettings | None = None
        self._resolver: ConfigResolver | None = None
        if encryption is not None:
            self.configure_encryption(encryption, extend=False)

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def cache(self) -> EncryptionProviderCache:
        return self._cache

    @property
    def is_configured(self) -> bool:
        return self._static is not None or self._resolver is not None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure_encryption(
        self,
        config: EncryptionOptions | Mapping[str, Any] | ConfigResolver | None,
        extend: bool = True,
    ) -> None:
        """
        Install an encryption configuration.

        The first call (or any call with ``extend=False``) resets the
        collection and records the non-schema options of *config* as the base.
        Later calls layer their schema and options over that base. A callable
        *config* is consulted on every operation instead.

        Raises:
            ConfigurationError: If *config* holds an invalid option or schema.
        """
        if self._base is None or not extend:
            extend = False
            self._base = EncryptionOptions()
            self._static = None
            self._resolver = None

        if callable(config) and not isinstance(config, (EncryptionOptions, Mapping)):
            self._resolver = config
            self._static = None
            return

        options, schema = _split_config(config)
        if not extend:
            self._base = self._base.merged(options)
        self._resolver = None
        self._static = self._settings(options, schema)

    def _settings(self, options: Mapping[str, Any], schema: Any) -> EncryptionSettings:
        assert self._base is not None
        settings = EncryptionSettings.model_validate(self._base.model_dump()).merged(options)
        path_schema = PathSchema.build(schema) if schema is not None else None
        return settings.model_copy(update={"path_schema": path_schema})

    def encryption_options(
        self, operation: str, context: CallContext | None = None
    ) -> EncryptionSettings | None:
        """The configuration in force for one operation, or ``None``."""
        if self._resolver is None:
            return self._static
        context = context or CallContext()
        try:
            returned = self._resolver(operation, context)
        except Exception as exc:
            raise ResolutionError(operation) from exc
        if not returned:
            returned = {}
        if not isinstance(returned, (Mapping, EncryptionOptions)):
            raise ConfigurationError(
                f"Encryption resolver returned {type(returned).__name__}, expected a mapping"
            )
        try:
            return self._settings(*_split_config(returned))
        except ConfigurationError as exc:
            raise ResolutionError(operation) from exc

    # ------------------------------------------------------------------
    # Transforms
    # ------------------------------------------------------------------

    def _client_for(self, options: EncryptionOptions) -> EncryptionClient:
        if self._connection is None:
            raise ConfigurationError("An encrypted collection needs a connection to encrypt")
        return self._cache.client(
            self._connection, options.kms_providers, options.key_vault_namespace
        )

    def _walk(
        self,
        value: Any,
        settings: EncryptionSettings,
        transform: Transform,
        operation: str,
        context: CallContext,
        is_query: bool,
    ) -> Any:
        walker = StructuralWalker(
            transform, settings, self._client_for, operation, context, is_query
        )
        return walker.walk(value, settings.path_schema)

    def encrypt_selector(
        self,
        selector: Any,
        operation: str = "find",
        context: CallContext | None = None,
        settings: EncryptionSettings | None = None,
    ) -> Any:
        context = context or CallContext(selector=selector)
        settings = settings or self.encryption_options(operation, context)
        if settings is None or not settings.path_schema:
            return selector
        return self._walk(
            selector, settings, self._encryptor.encrypt, operation, context, True
        )

    def encrypt_document(
        self,
        document: dict[str, Any],
        context: CallContext | None = None,
        settings: EncryptionSettings | None = None,
    ) -> dict[str, Any]:
        context = context or CallContext(document=document)
        settings = settings or self.encryption_options("insert", context)
        if settings is None or not settings.path_schema:
            return document
        return self._walk(
            document, settings, self._encryptor.encrypt, "insert", context, False
        )

    def encrypt_mutator(
        self,
        mutator: dict[str, Any],
        context: CallContext | None = None,
        settings: EncryptionSettings | None = None,
    ) -> dict[str, Any]:
        """Encrypt the values of ``$set`` and the array mutators; keep the rest."""
        context = context or CallContext(mutator=mutator)
        settings = settings or self.encryption_options("update", context)
        if settings is None or not settings.path_schema:
            return mutator
        encrypted: dict[str, Any] = {}
        for op, value in mutator.items():
            if op in MUTATOR_OPERATORS:
                encrypted[op] = self._walk(
                    value, settings, self._encryptor.encrypt, "update", context, True
                )
            else:
                encrypted[op] = value
        return encrypted

    def decrypt_document(
        self,
        document: dict[str, Any],
        operation: str,
        context: CallContext,
        settings: EncryptionSettings,
    ) -> dict[str, Any]:
        if not settings.path_schema:
            return document
        return self._walk(
            document, settings, self._encryptor.decrypt, operation, context, False
        )

    def _read_result(
        self,
        document: Any,
        resolve_as: str,
        operation: str,
        context: CallContext,
        settings: EncryptionSettings | None,
    ) -> Any:
        document_context = context.with_document(document)
        if settings is None and self.is_configured:
            settings = self.encryption_options(resolve_as, document_context)
        if settings is not None and settings.path_schema:
            document = self.decrypt_document(document, operation, document_context, settings)
        if self._transform is not None:
            document = self._transform(document)
        return document

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @staticmethod
    def _selector(selector: Any) -> Any:
        # a bare id is shorthand for {"_id": id}
        if selector is not None and not isinstance(selector, dict):
            return {"_id": selector}
        return selector

    def find(
        self, selector: Any = None, options: dict[str, Any] | None = None
    ) -> Cursor | EncryptedCursor:
        """Return a cursor whose documents are decrypted as they are read."""
        selector = self._selector(selector)
        if not self.is_configured and self._transform is None:
            return self._backend.find(selector, options)
        context = CallContext(selector=selector, options=options)
        settings = self.encryption_options("find", context)
        stored_selector = selector
        if selector and settings is not None and settings.path_schema:
            stored_selector = self.encrypt_selector(selector, "find", context, settings)
        if context.options and context.options.get("fastAutoEncryption"):
            logger.debug("find on fast path: reusing call-level configuration")
        cursor = self._backend.find(stored_selector, options)
        return EncryptedCursor(self, cursor, settings, context)

    def find_one(
        self, selector: Any = None, options: dict[str, Any] | None = None
    ) -> Any:
        """Return the first matching document, decrypted, or ``None``."""
        selector = self._selector(selector)
        if not self.is_configured and self._transform is None:
            return self._backend.find_one(selector, options)
        context = CallContext(selector=selector, options=options)
        settings = self.encryption_options("findOne", context)
        stored_selector = selector
        if selector and settings is not None and settings.path_schema:
            stored_selector = self.encrypt_selector(selector, "findOne", context, settings)
        result = self._backend.find_one(stored_selector, options)
        if result is None:
            return None
        fast = bool((options or {}).get("fastAutoEncryption"))
        return self._read_result(
            result, "result", "findOne", context, settings if fast else None
        )

    def insert(self, document: dict[str, Any], options: dict[str, Any] | None = None) -> Any:
        """Encrypt the configured fields of *document* and store it."""
        if not self.is_configured:
            return self._backend.insert(document, options)
        context = CallContext(document=document, options=options)
        settings = self.encryption_options("insert", context)
        if settings is None or not settings.path_schema:
            return self._backend.insert(document, options)
        return self._backend.insert(
            self.encrypt_document(document, context, settings), options
        )

    def update(
        self,
        selector: Any,
        mutator: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> int:
        selector = self._selector(selector)
        if not self.is_configured:
            return self._backend.update(selector, mutator, options)
        context = CallContext(selector=selector, mutator=mutator, options=options)
        settings = self.encryption_options("update", context)
        if settings is None or not settings.path_schema:
            return self._backend.update(selector, mutator, options)
        stored_selector = self.encrypt_selector(selector, "update", context, settings)
        stored_mutator = self.encrypt_mutator(mutator, context, settings)
        return self._backend.update(stored_selector, stored_mutator, options)

    def remove(self, selector: Any = None, options: dict[str, Any] | None = None) -> int:
        selector = self._selector(selector)
        if not self.is_configured:
            return self._backend.remove(selector, options)
        context = CallContext(selector=selector, options=options)
        settings = self.encryption_options("remove", context)
        if selector and settings is not None and settings.path_schema:
            selector = self.encrypt_selector(selector, "remove", context, settings)
        return self._backend.remove(selector, options)
