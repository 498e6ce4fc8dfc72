"""
aumai-autoencrypt quickstart: field-level encryption over an in-memory collection.

Run directly:

    python examples/quickstart.py

All demos are self-contained and require no external files.
"""

from __future__ import annotations

from aumai_autoencrypt.core import EncryptedCollection
from aumai_autoencrypt.models import RANDOM, CallContext
from aumai_autoencrypt.provider import generate_master_key
from aumai_autoencrypt.storage import InMemoryClient


def _collection(connection: InMemoryClient, name: str, master_key: bytes) -> EncryptedCollection:
    return EncryptedCollection(
        connection.collection("demo", name),
        connection=connection,
        encryption={
            "keyVaultNamespace": "demo.keyVault",
            "kmsProviders": {"local": {"key": master_key}},
            "keyAltName": "demo",
        },
    )


# ---------------------------------------------------------------------------
# Demo 1: A static schema, and queries over encrypted fields
# ---------------------------------------------------------------------------

def demo_static_schema() -> None:
    """Encrypt fixed paths and query them with equality operators."""
    print("\n=== Demo 1: Static schema ===")

    connection = InMemoryClient()
    patients = _collection(connection, "patients", generate_master_key())
    patients.configure_encryption(
        {
            "schema": {
                "ssn": True,
                "allergies.$": True,
                "notes": {"$options": {"algorithm": RANDOM, "keyAltName": "notes"}},
            }
        }
    )

    patients.insert(
        {
            "_id": "p1",
            "name": "Ada",
            "ssn": "123-45-6789",
            "allergies": ["penicillin", "latex"],
            "notes": {"visit": "2024-05-01", "summary": "all good"},
        }
    )

    stored = patients.backend.find_one("p1")
    assert stored is not None
    print(f"  Stored ssn         : {stored['ssn'][:12]!r}...")
    print(f"  Stored allergies   : {len(stored['allergies'])} ciphertexts")
    print(f"  Stored notes       : {type(stored['notes']).__name__}")

    found = patients.find_one({"allergies": "latex"})
    assert found is not None and found["ssn"] == "123-45-6789"
    print(f"  Found by allergy   : {found['name']} ({found['ssn']})")

    patients.update({"ssn": "123-45-6789"}, {"$push": {"allergies": "pollen"}})
    print(f"  After $push        : {patients.find_one('p1')['allergies']}")


# ---------------------------------------------------------------------------
# Demo 2: A per-call resolver choosing keys per tenant
# ---------------------------------------------------------------------------

def demo_tenant_resolver() -> None:
    """Pick the encrypted fields and key from the tenant of each document."""
    print("\n=== Demo 2: Per-tenant resolver ===")

    connection = InMemoryClient()
    tenants = {
        "acme": {"keyAltName": "acme", "fields": ["salary"]},
        "globex": {"keyAltName": "globex", "fields": ["salary", "title"]},
    }
    staff = _collection(connection, "staff", generate_master_key())

    def per_tenant(operation: str, context: CallContext) -> dict | None:
        source = context.document or context.selector or {}
        tenant = tenants.get(source.get("tenant"))
        if tenant is None:
            return None
        return {
            "schema": {
                field: {"$options": {"keyAltName": tenant["keyAltName"]}}
                for field in tenant["fields"]
            }
        }

    staff.configure_encryption(per_tenant)
    staff.insert({"_id": "1", "tenant": "acme", "salary": 100, "title": "CTO"})
    staff.insert({"_id": "2", "tenant": "globex", "salary": 90, "title": "CFO"})

    for doc in staff.backend.find({}, {"sort": {"_id": 1}}):
        encrypted = sorted(k for k, v in doc.items() if isinstance(v, bytes))
        print(f"  {doc['tenant']:<7} encrypted fields: {encrypted}")

    for doc in staff.find({}, {"sort": {"_id": 1}}):
        print(f"  {doc['tenant']:<7} decrypted       : salary={doc['salary']} title={doc['title']}")


# ---------------------------------------------------------------------------
# Demo 3: Adding encryption to existing data
# ---------------------------------------------------------------------------

def demo_safe_mode() -> None:
    """Read plaintext written before a field was encrypted."""
    print("\n=== Demo 3: Safe mode ===")

    connection = InMemoryClient()
    users = _collection(connection, "users", generate_master_key())
    users.insert({"_id": "u1", "email": "ada@example.com"})

    users.configure_encryption({"safe": True, "schema": {"email": True}})
    print(f"  Legacy read        : {users.find_one('u1')['email']}")
    print(f"  Query before rewrite: {users.find_one({'email': 'ada@example.com'})}")

    users.update("u1", {"$set": {"email": "ada@example.com"}})
    print(f"  Query after rewrite : {users.find_one({'email': 'ada@example.com'})}")


def main() -> None:
    demo_static_schema()
    demo_tenant_resolver()
    demo_safe_mode()
    print("\nAll demos completed.")


if __name__ == "__main__":
    main()
