"""Tests for aumai_autoencrypt.schema."""

from __future__ import annotations

from typing import Any

import pytest

from aumai_autoencrypt.errors import ConfigurationError, ConflictError, ResolutionError
from aumai_autoencrypt.models import RANDOM, CallContext, EncryptionOptions
from aumai_autoencrypt.schema import (
    OPTIONS,
    Disabled,
    PathSchema,
    Resolver,
    StaticOptions,
    SubSchema,
    flatten,
)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestBuild:
    def test_rejects_encrypting_at_multiple_layers(self) -> None:
        with pytest.raises(ConflictError):
            PathSchema.build({"object": True, "object.inner": True})

    def test_rejects_nested_conflict(self) -> None:
        with pytest.raises(ConflictError, match="object"):
            PathSchema.build({"object.inner": True, "object": {"inner": {"deep": True}}})

    def test_conflict_is_a_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError):
            PathSchema.build({"a.b": True, "a": True})

    def test_sibling_prefix_strings_do_not_conflict(self) -> None:
        schema = PathSchema.build({"name": True, "names.$": True})
        assert sorted(schema.paths()) == ["name", "names.$"]

    def test_flat_and_nested_are_equivalent(self) -> None:
        flat = PathSchema.build({"object.inner": True})
        nested = PathSchema.build({"object": {"inner": True}})
        assert flat.paths() == nested.paths() == ["object.inner"]

    def test_options_marker_is_a_leaf(self) -> None:
        schema = PathSchema.build({"secret": {OPTIONS: {"algorithm": RANDOM, "keyAltName": "k"}}})
        assert isinstance(schema.get("secret"), StaticOptions)
        assert schema.resolve("secret") == {"algorithm": RANDOM, "keyAltName": "k"}

    def test_options_model_is_a_leaf(self) -> None:
        schema = PathSchema.build({"secret": EncryptionOptions(algorithm=RANDOM)})
        assert schema.resolve("secret") == {"algorithm": RANDOM}

    @pytest.mark.parametrize("name", ["provider", "algorithm", "safe", "keyAltName"])
    def test_option_named_fields_are_nested_paths(self, name: str) -> None:
        schema = PathSchema.build({"user": {name: True}})
        assert schema.paths() == [f"user.{name}"]
        assert isinstance(schema.get("user"), SubSchema)
        assert schema.resolve(f"user.{name}") == {}
        assert schema.resolve("user") is None

    def test_several_option_named_fields(self) -> None:
        schema = PathSchema.build({"user": {"provider": True, "algorithm": True, "safe": False}})
        assert schema.paths() == ["user.provider", "user.algorithm", "user.safe"]
        assert schema.resolve("user.provider") == {}
        assert schema.resolve("user.safe") is None

    def test_options_marker_cannot_mix_with_fields(self) -> None:
        with pytest.raises(ConfigurationError, match="mixed"):
            PathSchema.build({"user": {OPTIONS: {"keyAltName": "k"}, "name": True}})

    @pytest.mark.parametrize(
        "options", [{"keyAltName": 5}, {"safe": "sometimes"}, {"kmsProviders": "local"}, "k"]
    )
    def test_invalid_static_options_raise(self, options: Any) -> None:
        with pytest.raises(ConfigurationError, match="card"):
            PathSchema.build({"card": {OPTIONS: options}})

    def test_false_is_disabled(self) -> None:
        schema = PathSchema.build({"field": False})
        assert isinstance(schema.get("field"), Disabled)
        assert schema.resolve("field") is None

    def test_unsupported_leaf_raises(self) -> None:
        with pytest.raises(ConfigurationError, match="field"):
            PathSchema.build({"field": 42})

    def test_build_accepts_existing_schema(self) -> None:
        schema = PathSchema.build({"a": True})
        assert PathSchema.build(schema) is schema

    def test_empty_schema_is_falsy(self) -> None:
        assert not PathSchema.build({})
        assert not PathSchema.build(None)

    def test_flatten_yields_dotted_paths(self) -> None:
        assert dict(flatten({"a": {"b": True, "c": {"$": True}}})) == {
            "a.b": True,
            "a.c.$": True,
        }


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


class TestResolve:
    def test_flat_schema(self) -> None:
        assert PathSchema.build({"object.inner": True}).resolve("object.inner") == {}

    def test_nested_schema(self) -> None:
        schema = PathSchema.build({"object": {"inner": True}})
        assert schema.resolve("object.inner") == {}

    def test_array_schema(self) -> None:
        schema = PathSchema.build({"array": {"$": True}})
        assert schema.resolve("array.$") == {}

    def test_array_index_resolves_through_marker(self) -> None:
        schema = PathSchema.build({"array.$": True})
        assert schema.resolve("array.0") == {}
        assert schema.resolve("array.17") == {}

    def test_array_and_nested_object_schema(self) -> None:
        schema = PathSchema.build({"array": {"$": {"inner": True}}})
        assert schema.resolve("array.inner") == {}

    def test_positional_and_indexed_paths_into_array_objects(self) -> None:
        schema = PathSchema.build({"array.$.inner": True})
        assert schema.resolve("array.$.inner") == {}
        assert schema.resolve("array.1.inner") == {}

    def test_array_itself_does_not_resolve(self) -> None:
        schema = PathSchema.build({"array": {"$": True}})
        assert schema.resolve("array") is None

    def test_nested_object_itself_does_not_resolve(self) -> None:
        schema = PathSchema.build({"object": {"inner": True}})
        assert schema.resolve("object") is None

    def test_wildcard_object_itself_does_not_resolve(self) -> None:
        schema = PathSchema.build({"object": {"*": True}})
        assert schema.resolve("object") is None

    def test_wildcard_matches_unknown_sub_keys(self) -> None:
        schema = PathSchema.build({"object": {"*": True}})
        assert schema.resolve("object.inner") == {}
        assert schema.resolve("object.anything") == {}

    def test_wildcard_does_not_answer_array_sentinel(self) -> None:
        schema = PathSchema.build({"object.*": True})
        assert schema.child("object") is not None
        assert schema.child("object").resolve("$") is None  # type: ignore[union-attr]

    def test_array_marker_does_not_answer_wildcard_sentinel(self) -> None:
        schema = PathSchema.build({"array.$": True})
        assert schema.child("array").resolve("*") is None  # type: ignore[union-attr]

    def test_exact_match_beats_wildcard(self) -> None:
        schema = PathSchema.build({"object": {"*": True, "public": False}})
        assert schema.resolve("object.public") is None
        assert schema.resolve("object.private") == {}

    def test_unknown_path_is_no_match(self) -> None:
        schema = PathSchema.build({"a.b": True})
        assert schema.resolve("c") is None
        assert schema.resolve("a.c") is None
        assert schema.resolve("c.d") is None

    def test_child_returns_sub_schema(self) -> None:
        schema = PathSchema.build({"object.inner": True})
        assert isinstance(schema.get("object"), SubSchema)
        assert schema.child("object") is not None
        assert schema.child("inner") is None


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


class TestResolvers:
    def test_resolver_receives_operation_and_context(self) -> None:
        calls: list[tuple[str, Any]] = []

        def field(operation: str, context: CallContext) -> bool:
            calls.append((operation, context))
            return True

        schema = PathSchema.build({"field": field})
        context = CallContext(selector={"field": 1})
        assert isinstance(schema.get("field"), Resolver)
        assert schema.resolve("field", "find", context) == {}
        assert calls == [("find", context)]

    @pytest.mark.parametrize("returned", [None, False, 0, ""])
    def test_falsy_resolver_result_is_no_match(self, returned: Any) -> None:
        schema = PathSchema.build({"field": lambda op, ctx: returned})
        assert schema.resolve("field", "insert") is None

    def test_empty_options_mean_defaults(self) -> None:
        schema = PathSchema.build({"field": lambda op, ctx: {}})
        assert schema.resolve("field", "insert") == {}

    def test_resolver_options_are_returned(self) -> None:
        schema = PathSchema.build({"field": lambda op, ctx: {"keyAltName": op}})
        assert schema.resolve("field", "update") == {"keyAltName": "update"}

    def test_resolver_errors_are_wrapped(self) -> None:
        def broken(operation: str, context: CallContext) -> bool:
            raise ValueError("lookup failed")

        schema = PathSchema.build({"field": broken})
        with pytest.raises(ResolutionError) as info:
            schema.resolve("field", "insert")
        assert isinstance(info.value.__cause__, ValueError)
        assert info.value.path == "field"

    @pytest.mark.parametrize("returned", [{"keyAltName": 5}, {"algorithm": ["x"]}])
    def test_invalid_resolver_options_are_wrapped(self, returned: Any) -> None:
        schema = PathSchema.build({"field": lambda op, ctx: returned})
        with pytest.raises(ResolutionError) as info:
            schema.resolve("field", "insert")
        assert isinstance(info.value.__cause__, ConfigurationError)
        assert info.value.path == "field"

    def test_resolver_may_return_options_model(self) -> None:
        schema = PathSchema.build({"field": lambda op, ctx: EncryptionOptions(key_alt_name="m")})
        assert schema.resolve("field") == {"key_alt_name": "m"}

    def test_resolved_options_are_copies(self) -> None:
        schema = PathSchema.build({"field": {OPTIONS: {"keyAltName": "a"}}})
        schema.resolve("field")["keyAltName"] = "b"  # type: ignore[index]
        assert schema.resolve("field") == {"keyAltName": "a"}
