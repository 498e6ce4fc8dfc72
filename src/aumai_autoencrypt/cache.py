"""Memoisation of encryption clients and data keys.

Clients are cached per ``(connection, canonical KMS configuration)`` and data
keys per ``(client, key alt name)``. Connections and clients are registered
weakly under integer handles, so cache keys are plain tuples of handles and
strings and a collected connection takes its clients and data keys with it.
First creation of any entry is single-flight: concurrent callers asking for
the same key wait for one creator, callers asking for other keys do not.
"""

from __future__ import annotations

import itertools
import logging
import threading
import weakref
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Hashable, Iterator

from .codec import canonical_dumps
from .errors import ConfigurationError
from .models import DataKeyRecord
from .provider import ClientFactory, EncryptionClient, LocalEncryptionClient

__all__ = ["EncryptionProviderCache", "default_cache"]

logger = logging.getLogger(__name__)


@dataclass
class _Flight:
    lock: threading.Lock = field(default_factory=threading.Lock)
    waiters: int = 0


class EncryptionProviderCache:
    """Shared cache of encryption clients and their data keys."""

    def __init__(self, client_factory: ClientFactory = LocalEncryptionClient) -> None:
        self._client_factory = client_factory
        self._lock = threading.Lock()
        self._flights: dict[Hashable, _Flight] = {}
        self._handles = itertools.count()
        self._connection_handles: weakref.WeakKeyDictionary[Any, int] = (
            weakref.WeakKeyDictionary()
        )
        self._client_handles: weakref.WeakKeyDictionary[EncryptionClient, int] = (
            weakref.WeakKeyDictionary()
        )
        # Finalizers only append here; the purge runs under the lock on next use.
        self._collected: deque[int] = deque()
        self._clients: dict[tuple[int, str], EncryptionClient] = {}
        self._data_keys: dict[tuple[int, str], DataKeyRecord] = {}

    @contextmanager
    def _single_flight(self, key: Hashable) -> Iterator[None]:
        with self._lock:
            flight = self._flights.get(key)
            if flight is None:
                flight = self._flights[key] = _Flight()
            flight.waiters += 1
        try:
            with flight.lock:
                yield
        finally:
            with self._lock:
                flight.waiters -= 1
                if not flight.waiters and self._flights.get(key) is flight:
                    del self._flights[key]

    def _handle(self, registry: weakref.WeakKeyDictionary[Any, int], item: Any) -> int:
        handle = registry.get(item)
        if handle is None:
            handle = registry[item] = next(self._handles)
            weakref.finalize(item, self._collected.append, handle)
        return handle

    def _purge(self) -> None:
        while self._collected:
            gone = self._collected.popleft()
            for key in [k for k in self._clients if k[0] == gone]:
                client_handle = self._client_handles.get(self._clients.pop(key))
                if client_handle is not None:
                    self._collected.append(client_handle)
            for key in [k for k in self._data_keys if k[0] == gone]:
                del self._data_keys[key]

    def client(
        self,
        connection: Any,
        kms_providers: dict[str, Any] | None,
        key_vault_namespace: str | None,
    ) -> EncryptionClient:
        """Return the client for this connection and KMS configuration.

        Equivalent configurations hit the same entry regardless of key order.
        *connection* is held weakly, so it must be hashable and weak-referenceable.
        """
        if not kms_providers or not key_vault_namespace:
            raise ConfigurationError(
                "keyVaultNamespace and kmsProviders must be configured before encrypting"
            )
        with self._lock:
            self._purge()
            connection_handle = self._handle(self._connection_handles, connection)
        fingerprint = canonical_dumps(
            {"keyVaultNamespace": key_vault_namespace, "kmsProviders": kms_providers}
        )
        key = (connection_handle, fingerprint)

        client = self._clients.get(key)
        if client is None:
            with self._single_flight(("client", key)):
                client = self._clients.get(key)
                if client is None:
                    logger.debug(
                        "Creating encryption client for %s on connection #%d",
                        key_vault_namespace,
                        connection_handle,
                    )
                    client = self._client_factory(
                        connection, key_vault_namespace, kms_providers
                    )
                    with self._lock:
                        self._clients[key] = client
        return client

    def data_key(
        self,
        client: EncryptionClient,
        provider: str,
        master_key: Any,
        key_alt_name: str | None,
    ) -> DataKeyRecord:
        """Return the data key named *key_alt_name*, creating it if needed.

        On a miss the vault is bulk-loaded first so that existing keys are
        reused; a key is only created when no stored record carries the alias.
        Failed creations leave nothing behind and are retried next time.
        """
        if not key_alt_name:
            raise ConfigurationError("keyAltName must be configured before encrypting")
        with self._lock:
            self._purge()
            client_handle = self._handle(self._client_handles, client)
        key = (client_handle, key_alt_name)

        record = self._data_keys.get(key)
        if record is not None:
            return record
        with self._single_flight(("data_key", key)):
            record = self._data_keys.get(key)
            if record is None:
                self._load_keys(client_handle, client)
                record = self._data_keys.get(key)
            if record is None:
                key_id = client.create_data_key(
                    provider, master_key=master_key, key_alt_names=[key_alt_name]
                )
                record = DataKeyRecord(
                    key_id=key_id,
                    key_alt_names=[key_alt_name],
                    master_key={"provider": provider, "key": master_key},
                )
                with self._lock:
                    self._data_keys[key] = record
        return record

    def _load_keys(self, client_handle: int, client: EncryptionClient) -> None:
        records = list(client.get_keys())
        logger.debug("Loaded %d data key(s) from the key vault", len(records))
        with self._lock:
            for stored in records:
                alt_names = list(stored.get("keyAltNames") or [])
                record = DataKeyRecord(
                    key_id=stored["_id"],
                    key_alt_names=alt_names,
                    master_key=stored.get("masterKey"),
                )
                for alt_name in alt_names:
                    self._data_keys.setdefault((client_handle, alt_name), record)

    def reset(self) -> None:
        """Forget every client and data key. Meant for test isolation."""
        with self._lock:
            self._flights.clear()
            self._connection_handles.clear()
            self._client_handles.clear()
            self._collected.clear()
            self._clients.clear()
            self._data_keys.clear()


default_cache = EncryptionProviderCache()
