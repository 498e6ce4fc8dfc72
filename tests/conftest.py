"""Shared test fixtures for aumai-autoencrypt."""

from __future__ import annotations

from typing import Any, Iterator

import pytest

from aumai_autoencrypt.cache import EncryptionProviderCache
from aumai_autoencrypt.core import EncryptedCollection
from aumai_autoencrypt.models import DETERMINISTIC, RANDOM
from aumai_autoencrypt.provider import LocalEncryptionClient, generate_master_key
from aumai_autoencrypt.storage import InMemoryClient, InMemoryCollection

KEY_VAULT_NAMESPACE = "test.keyVault"


@pytest.fixture()
def key_vault_namespace() -> str:
    return KEY_VAULT_NAMESPACE


# ---------------------------------------------------------------------------
# Keys and options
# ---------------------------------------------------------------------------


@pytest.fixture()
def master_key() -> bytes:
    return generate_master_key()


@pytest.fixture()
def enc_options(master_key: bytes) -> dict[str, Any]:
    return {
        "keyVaultNamespace": KEY_VAULT_NAMESPACE,
        "kmsProviders": {"local": {"key": master_key}},
        "masterKey": master_key,
        "provider": "local",
        "keyAltName": "everything",
        "algorithm": DETERMINISTIC,
    }


@pytest.fixture()
def random_options(enc_options: dict[str, Any]) -> dict[str, Any]:
    return {**enc_options, "algorithm": RANDOM}


# ---------------------------------------------------------------------------
# Storage and providers
# ---------------------------------------------------------------------------


@pytest.fixture()
def connection() -> InMemoryClient:
    return InMemoryClient()


@pytest.fixture()
def cache() -> Iterator[EncryptionProviderCache]:
    cache = EncryptionProviderCache()
    yield cache
    cache.reset()


@pytest.fixture()
def client(connection: InMemoryClient, master_key: bytes) -> LocalEncryptionClient:
    return LocalEncryptionClient(
        connection, KEY_VAULT_NAMESPACE, {"local": {"key": master_key}}
    )


@pytest.fixture()
def backend(connection: InMemoryClient) -> InMemoryCollection:
    return connection.collection("test", "dummy")


@pytest.fixture()
def collection(
    backend: InMemoryCollection,
    connection: InMemoryClient,
    cache: EncryptionProviderCache,
    enc_options: dict[str, Any],
) -> EncryptedCollection:
    return EncryptedCollection(
        backend, connection=connection, cache=cache, encryption=enc_options
    )


@pytest.fixture()
def plain_collection(
    backend: InMemoryCollection,
    connection: InMemoryClient,
    cache: EncryptionProviderCache,
) -> EncryptedCollection:
    return EncryptedCollection(backend, connection=connection, cache=cache)
