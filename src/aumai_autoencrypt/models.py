"""Pydantic models for aumai-autoencrypt."""

from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError

__all__ = [
    "DETERMINISTIC",
    "RANDOM",
    "EncryptionOptions",
    "EncryptionSettings",
    "CallContext",
    "DataKeyRecord",
]

DETERMINISTIC = "AEAD_AES_256_CBC_HMAC_SHA_512-Deterministic"
RANDOM = "AEAD_AES_256_CBC_HMAC_SHA_512-Random"


class EncryptionOptions(BaseModel):
    """Global or per-field encryption options.

    Accepts the camelCase keys of the configuration surface as well as the
    snake_case field names. Unknown keys are ignored, so a resolver may return
    a richer object than it needs to.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        arbitrary_types_allowed=True,
    )

    key_vault_namespace: str | None = Field(default=None, alias="keyVaultNamespace")
    kms_providers: dict[str, Any] | None = Field(default=None, alias="kmsProviders")
    master_key: Any = Field(default=None, alias="masterKey")
    key_alt_name: str | None = Field(default=None, alias="keyAltName")
    algorithm: str = DETERMINISTIC
    provider: str = "local"
    safe: bool = False

    def merged(
        self, override: EncryptionOptions | Mapping[str, Any] | None
    ) -> EncryptionOptions:
        """Return a copy of these options with *override* layered on top.

        Only values the override actually sets (and that are not ``None``)
        replace the receiver's values.

        Raises:
            ConfigurationError: If *override* holds an invalid option value.
        """
        if override is None:
            return self.model_copy()
        if not isinstance(override, EncryptionOptions):
            try:
                override = EncryptionOptions.model_validate(dict(override))
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid encryption options: {exc}") from exc
        updates = override.model_dump(exclude_unset=True, exclude_none=True)
        return self.model_copy(update=updates)

    @property
    def kms_config(self) -> dict[str, Any]:
        """The part of the options that identifies an encryption client."""
        return {
            "keyVaultNamespace": self.key_vault_namespace,
            "kmsProviders": self.kms_providers,
        }


class EncryptionSettings(EncryptionOptions):
    """Per-call encryption configuration: global options plus the active schema."""

    # Holds a ``PathSchema``; typed loosely to keep models free of schema imports.
    path_schema: Any = Field(default=None, alias="schema", exclude=True)


class CallContext(BaseModel):
    """Arguments of the operation that triggered a resolver call."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    selector: Any = None
    mutator: Any = None
    document: Any = None
    options: Any = None

    def with_document(self, document: Any) -> CallContext:
        return self.model_copy(update={"document": document})


class DataKeyRecord(BaseModel):
    """A data key known to the cache, indexed by each of its alt names."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    key_id: Any
    key_alt_names: list[str] = Field(default_factory=list)
    master_key: Any = None
