"""Encryption provider protocol and a local provider built on ``cryptography``.

The protocol follows the MongoDB explicit-encryption client: data keys live
as records in a key vault collection and are referenced by id or alt name.
:class:`LocalEncryptionClient` implements it with a local master key:

* data keys are 96 random bytes, wrapped with AES-GCM under a key derived
  from the master key by HKDF-SHA256;
* the deterministic algorithm uses AES-SIV, so equal plaintexts produce equal
  ciphertexts and equality queries keep working;
* the random algorithm uses AES-GCM with a fresh nonce.
"""

from __future__ import annotations

import base64
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, AESSIV
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .codec import canonical_dumps, loads
from .errors import ConfigurationError, ProviderError
from .models import DETERMINISTIC, RANDOM

__all__ = [
    "KeyVaultStore",
    "Connection",
    "EncryptionClient",
    "ClientFactory",
    "LocalEncryptionClient",
    "generate_master_key",
]

logger = logging.getLogger(__name__)

MASTER_KEY_LENGTH = 96
_DATA_KEY_LENGTH = 96
_KEY_ID_LENGTH = 16
_NONCE_LENGTH = 12
_KEK_INFO = b"aumai-autoencrypt local key encryption key"
_ALGORITHM_MARKERS = {DETERMINISTIC: 1, RANDOM: 2}


class KeyVaultStore(Protocol):
    """The slice of a storage collection the key vault needs."""

    def find(self, selector: Any = None, options: Any = None) -> Any: ...

    def find_one(self, selector: Any = None, options: Any = None) -> Any: ...

    def insert(self, document: dict[str, Any], options: Any = None) -> Any: ...


class Connection(Protocol):
    def key_vault(self, namespace: str) -> KeyVaultStore: ...


class EncryptionClient(Protocol):
    def encrypt(
        self,
        value: Any,
        algorithm: str,
        key_id: Any = None,
        key_alt_name: str | None = None,
    ) -> bytes: ...

    def decrypt(self, value: Any) -> Any: ...

    def create_data_key(
        self,
        kms_provider: str,
        master_key: Any = None,
        key_alt_names: list[str] | None = None,
    ) -> Any: ...

    def get_keys(self) -> Iterable[dict[str, Any]]: ...


class ClientFactory(Protocol):
    def __call__(
        self,
        connection: Any,
        key_vault_namespace: str,
        kms_providers: dict[str, Any],
    ) -> EncryptionClient: ...


def generate_master_key() -> bytes:
    """Return fresh key material for the ``local`` KMS provider."""
    return os.urandom(MASTER_KEY_LENGTH)


def _secret(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, str):
        return base64.b64decode(value)
    raise ConfigurationError("Local master key must be bytes or a base64 string")


class LocalEncryptionClient:
    """Encryption client for the ``local`` KMS provider.

    Args:
        connection: Anything with ``key_vault(namespace)`` returning a
            collection, e.g. :class:`~aumai_autoencrypt.storage.InMemoryClient`.
        key_vault_namespace: ``"<db>.<collection>"`` holding the key records.
        kms_providers: ``{"local": {"key": <96 bytes or base64>}}``.
    """

    def __init__(
        self,
        connection: Connection,
        key_vault_namespace: str,
        kms_providers: dict[str, Any],
    ) -> None:
        if not key_vault_namespace or "." not in key_vault_namespace:
            raise ConfigurationError(
                f"keyVaultNamespace must look like 'db.collection', got {key_vault_namespace!r}"
            )
        if not kms_providers:
            raise ConfigurationError("kmsProviders is required to encrypt or decrypt")
        self.key_vault_namespace = key_vault_namespace
        self._vault = connection.key_vault(key_vault_namespace)
        self._kms_providers = kms_providers
        self._materials: dict[bytes, bytes] = {}
        self._lock = threading.Lock()

    @property
    def key_vault(self) -> KeyVaultStore:
        return self._vault

    def get_keys(self) -> list[dict[str, Any]]:
        """All key records in the vault."""
        return self._vault.find({}).fetch()

    def _kek(self, kms_provider: str) -> bytes:
        if kms_provider != "local":
            raise ProviderError(f"Unsupported KMS provider {kms_provider!r}")
        config = self._kms_providers.get(kms_provider)
        if not config or "key" not in config:
            raise ProviderError(f"KMS provider {kms_provider!r} is not configured")
        secret = _secret(config["key"])
        if len(secret) != MASTER_KEY_LENGTH:
            raise ProviderError(
                f"Local master key must be {MASTER_KEY_LENGTH} bytes, got {len(secret)}"
            )
        hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_KEK_INFO)
        return hkdf.derive(secret)

    def create_data_key(
        self,
        kms_provider: str,
        master_key: Any = None,
        key_alt_names: list[str] | None = None,
    ) -> bytes:
        """Create, wrap and store a new data key; return its id."""
        kek = self._kek(kms_provider)
        key_id = uuid.uuid4().bytes
        material = os.urandom(_DATA_KEY_LENGTH)
        nonce = os.urandom(_NONCE_LENGTH)
        wrapped = nonce + AESGCM(kek).encrypt(nonce, material, key_id)
        master = {"provider": kms_provider}
        if isinstance(master_key, dict):
            master.update(master_key)
        self._vault.insert(
            {
                "_id": key_id,
                "keyAltNames": list(key_alt_names or []),
                "keyMaterial": wrapped,
                "masterKey": master,
                "creationDate": datetime.now(timezone.utc).isoformat(),
            }
        )
        with self._lock:
            self._materials[key_id] = material
        logger.debug("Created data key %s", uuid.UUID(bytes=key_id))
        return key_id

    def _material(self, key_id: bytes) -> bytes:
        with self._lock:
            material = self._materials.get(key_id)
        if material is not None:
            return material
        record = self._vault.find_one({"_id": key_id})
        if record is None:
            raise ProviderError(f"No data key with id {uuid.UUID(bytes=key_id)}")
        kek = self._kek(record.get("masterKey", {}).get("provider", "local"))
        wrapped = record["keyMaterial"]
        nonce, body = wrapped[:_NONCE_LENGTH], wrapped[_NONCE_LENGTH:]
        try:
            material = AESGCM(kek).decrypt(nonce, body, key_id)
        except InvalidTag as exc:
            raise ProviderError("Data key could not be unwrapped with the master key") from exc
        with self._lock:
            self._materials[key_id] = material
        return material

    def _key_id_for(self, key_alt_name: str) -> bytes:
        record = self._vault.find_one({"keyAltNames": key_alt_name})
        if record is None:
            raise ProviderError(f"No data key with alt name {key_alt_name!r}")
        return record["_id"]

    def encrypt(
        self,
        value: Any,
        algorithm: str,
        key_id: Any = None,
        key_alt_name: str | None = None,
    ) -> bytes:
        """Encrypt *value* with the data key named by *key_id* or *key_alt_name*."""
        marker = _ALGORITHM_MARKERS.get(algorithm)
        if marker is None:
            raise ProviderError(f"Unsupported algorithm {algorithm!r}")
        if algorithm == DETERMINISTIC and isinstance(value, (dict, list, tuple)):
            raise ProviderError(
                "Cannot deterministically encrypt an object or array; use the random algorithm"
            )
        if key_id is None:
            if key_alt_name is None:
                raise ProviderError("A key id or key alt name is required to encrypt")
            key_id = self._key_id_for(key_alt_name)
        key_id = bytes(key_id)
        material = self._material(key_id)
        try:
            plaintext = canonical_dumps({"v": value}).encode("utf-8")
        except TypeError as exc:
            raise ProviderError(str(exc)) from exc

        if algorithm == DETERMINISTIC:
            payload = AESSIV(material[:64]).encrypt(plaintext, [key_id])
        else:
            nonce = os.urandom(_NONCE_LENGTH)
            payload = nonce + AESGCM(material[64:]).encrypt(nonce, plaintext, key_id)
        return bytes([marker]) + key_id + payload

    def decrypt(self, value: Any) -> Any:
        """Decrypt a value produced by :meth:`encrypt`."""
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise ProviderError(
                f"Cannot decrypt a value of type {type(value).__name__}; expected encrypted binary"
            )
        value = bytes(value)
        if len(value) <= 1 + _KEY_ID_LENGTH:
            raise ProviderError("Encrypted value is truncated")
        marker = value[0]
        key_id = value[1 : 1 + _KEY_ID_LENGTH]
        payload = value[1 + _KEY_ID_LENGTH :]
        material = self._material(key_id)
        try:
            if marker == _ALGORITHM_MARKERS[DETERMINISTIC]:
                plaintext = AESSIV(material[:64]).decrypt(payload, [key_id])
            elif marker == _ALGORITHM_MARKERS[RANDOM]:
                nonce, body = payload[:_NONCE_LENGTH], payload[_NONCE_LENGTH:]
                plaintext = AESGCM(material[64:]).decrypt(nonce, body, key_id)
            else:
                raise ProviderError(f"Unknown ciphertext marker {marker}")
        except InvalidTag as exc:
            raise ProviderError("Ciphertext failed authentication") from exc
        return loads(plaintext)["v"]
