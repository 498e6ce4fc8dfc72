"""CLI entry point for aumai-autoencrypt."""

from __future__ import annotations

import base64
import logging
import sys
from pathlib import Path
from typing import Any

import click

from . import codec
from .cache import EncryptionProviderCache
from .core import EncryptedCollection
from .errors import AutoEncryptError
from .models import DETERMINISTIC, RANDOM, CallContext
from .provider import generate_master_key
from .schema import PathSchema
from .storage import InMemoryClient

_KEY_VAULT_NAMESPACE = "autoencrypt.keyVault"
_ALGORITHMS = {"deterministic": DETERMINISTIC, "random": RANDOM}


@click.group()
@click.version_option(package_name="aumai-autoencrypt")
@click.option("--verbose", is_flag=True, help="Log cache and key vault activity.")
def main(verbose: bool) -> None:
    """AumAI AutoEncrypt: schema-driven field-level encryption for documents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def _fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _read_json(path: str) -> Any:
    try:
        return codec.loads(Path(path).read_text(encoding="utf-8"))
    except ValueError as exc:
        _fail(f"invalid JSON in {path}: {exc}")


def _open_collection(
    key_path: str,
    vault_path: str,
    key_alt_name: str,
    algorithm: str,
    safe: bool = False,
) -> tuple[EncryptedCollection, InMemoryClient]:
    connection = InMemoryClient()
    vault = connection.key_vault(_KEY_VAULT_NAMESPACE)
    if Path(vault_path).exists():
        for record in _read_json(vault_path):
            vault.insert(record)
    master_key = Path(key_path).read_text(encoding="ascii").strip()
    collection = EncryptedCollection(
        connection.collection("autoencrypt", "documents"),
        connection=connection,
        cache=EncryptionProviderCache(),
        encryption={
            "keyVaultNamespace": _KEY_VAULT_NAMESPACE,
            "kmsProviders": {"local": {"key": master_key}},
            "keyAltName": key_alt_name,
            "algorithm": _ALGORITHMS[algorithm],
            "safe": safe,
        },
    )
    return collection, connection


def _save_vault(connection: InMemoryClient, vault_path: str) -> None:
    records = connection.key_vault(_KEY_VAULT_NAMESPACE).find({}).fetch()
    Path(vault_path).write_text(codec.dumps(records), encoding="utf-8")


_key_option = click.option(
    "--key",
    "key_path",
    default="master.key",
    show_default=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Path to the base64 local master key.",
)
_vault_option = click.option(
    "--vault",
    "vault_path",
    default="keyvault.json",
    show_default=True,
    type=click.Path(dir_okay=False),
    help="JSON file holding the wrapped data keys.",
)
_schema_option = click.option(
    "--schema",
    "schema_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON encryption schema, nested or flat dotted paths.",
)


@main.command("keygen")
@click.option(
    "--output",
    "key_path",
    default="master.key",
    show_default=True,
    help="Path to write the generated local master key.",
)
def keygen_command(key_path: str) -> None:
    """Generate a new 96-byte local master key."""
    key = base64.b64encode(generate_master_key())
    Path(key_path).write_bytes(key)
    click.echo(f"Key written to {key_path}")
    click.echo("IMPORTANT: Keep this key secret and backed up.")


@main.command("encrypt")
@click.option(
    "--input",
    "input_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON document, or list of documents, to encrypt.",
)
@_schema_option
@_key_option
@_vault_option
@click.option("--output", "output_path", required=True, type=click.Path(dir_okay=False))
@click.option("--key-alt-name", default="default", show_default=True)
@click.option(
    "--algorithm",
    type=click.Choice(sorted(_ALGORITHMS)),
    default="deterministic",
    show_default=True,
)
def encrypt_command(
    input_path: str,
    schema_path: str,
    key_path: str,
    vault_path: str,
    output_path: str,
    key_alt_name: str,
    algorithm: str,
) -> None:
    """Encrypt the schema's fields in a JSON document."""
    documents = _read_json(input_path)
    single = isinstance(documents, dict)
    collection, connection = _open_collection(key_path, vault_path, key_alt_name, algorithm)
    try:
        collection.configure_encryption({"schema": _read_json(schema_path)})
        encrypted = [collection.encrypt_document(doc) for doc in ([documents] if single else documents)]
    except AutoEncryptError as exc:
        _fail(str(exc))
    _save_vault(connection, vault_path)
    Path(output_path).write_text(
        codec.dumps(encrypted[0] if single else encrypted), encoding="utf-8"
    )
    click.echo(f"Encrypted {len(encrypted)} document(s) to {output_path}")


@main.command("decrypt")
@click.option(
    "--input",
    "input_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON document, or list of documents, produced by `encrypt`.",
)
@_schema_option
@_key_option
@_vault_option
@click.option("--output", "output_path", default=None, type=click.Path(dir_okay=False))
@click.option("--safe", is_flag=True, help="Pass through values that are not encrypted.")
def decrypt_command(
    input_path: str,
    schema_path: str,
    key_path: str,
    vault_path: str,
    output_path: str | None,
    safe: bool,
) -> None:
    """Decrypt the schema's fields in a JSON document."""
    documents = _read_json(input_path)
    single = isinstance(documents, dict)
    collection, _ = _open_collection(key_path, vault_path, "default", "deterministic", safe)
    decrypted = []
    try:
        collection.configure_encryption({"schema": _read_json(schema_path)})
        for doc in [documents] if single else documents:
            context = CallContext(document=doc)
            settings = collection.encryption_options("fetch", context)
            decrypted.append(collection.decrypt_document(doc, "fetch", context, settings))
    except AutoEncryptError as exc:
        _fail(str(exc))
    text = codec.dumps(decrypted[0] if single else decrypted)
    if output_path:
        Path(output_path).write_text(text, encoding="utf-8")
        click.echo(f"Decrypted {len(decrypted)} document(s) to {output_path}")
    else:
        click.echo(text)


@main.command("resolve")
@_schema_option
@click.argument("paths", nargs=-1, required=True)
def resolve_command(schema_path: str, paths: tuple[str, ...]) -> None:
    """Show which encryption options each dotted PATH resolves to."""
    try:
        schema = PathSchema.build(_read_json(schema_path))
        for path in paths:
            options = schema.resolve(path, "resolve", CallContext())
            shown = "-" if options is None else codec.canonical_dumps(options)
            click.echo(f"{path}\t{shown}")
    except AutoEncryptError as exc:
        _fail(str(exc))


if __name__ == "__main__":
    main()
