"""Tests for sensitive attribute partitioning."""

from __future__ import annotations

import copy

import pytest

from bridge.paths import FieldPath
from bridge.sensitive import (
    SensitiveConfig,
    SensitiveExtractionError,
    SensitivePartitioner,
    partition,
    to_bytes,
)
from resource_mock import access_key_extractor


class TestToBytes:
    """Tests for payload encoding."""

    def test_scalars(self) -> None:
        """Test scalar encodings."""
        assert to_bytes("shh") == b"shh"
        assert to_bytes(True) == b"true"
        assert to_bytes(False) == b"false"
        assert to_bytes(5432) == b"5432"
        assert to_bytes(b"raw") == b"raw"

    def test_structured(self) -> None:
        """Test structured values encode as sorted JSON."""
        assert to_bytes({"b": 1, "a": 2}) == b'{"a": 2, "b": 1}'


class TestPartition:
    """Tests for SensitivePartitioner."""

    def test_schema_and_extractor_keys(self) -> None:
        """Test schema-derived and extractor keys are both present."""
        config = SensitiveConfig(
            fields=frozenset({"id", "secret"}),
            additional=access_key_extractor,
        )
        result = partition({"id": "AKIAEXAMPLE", "secret": "shh"}, config)

        assert result.connection == {
            "attribute.id": b"AKIAEXAMPLE",
            "attribute.secret": b"shh",
            "aws_access_key_id": b"AKIAEXAMPLE",
            "aws_secret_access_key": b"shh",
        }
        assert result.visible == {}

    def test_non_sensitive_fields_stay_visible(self) -> None:
        """Test ordinary attributes are untouched."""
        config = SensitiveConfig(fields=frozenset({"password"}))
        result = partition({"password": "p", "endpoint": "db:5432"}, config)
        assert result.visible == {"endpoint": "db:5432"}
        assert result.connection == {"attribute.password": b"p"}

    def test_list_elements(self) -> None:
        """Test repeated sensitive leaves flatten with numeric positions."""
        partitioner = SensitivePartitioner(
            SensitiveConfig(), schema_paths=[FieldPath.parse("keys[].secret")]
        )
        result = partitioner.partition(
            {"keys": [{"name": "a", "secret": "s0"}, {"name": "b", "secret": "s1"}]}
        )
        assert result.connection == {
            "attribute.keys.0.secret": b"s0",
            "attribute.keys.1.secret": b"s1",
        }
        assert result.visible == {"keys": [{"name": "a"}, {"name": "b"}]}

    def test_sensitive_map_flattens(self) -> None:
        """Test a sensitive map flattens every leaf."""
        config = SensitiveConfig(fields=frozenset({"credentials"}))
        result = partition({"credentials": {"user": "u", "ports": [1, 2]}}, config)
        assert result.connection == {
            "attribute.credentials.user": b"u",
            "attribute.credentials.ports.0": b"1",
            "attribute.credentials.ports.1": b"2",
        }
        assert "credentials" not in result.visible

    def test_null_and_absent_leaves(self) -> None:
        """Test unobserved sensitive leaves produce no keys."""
        config = SensitiveConfig(fields=frozenset({"password", "token"}))
        result = partition({"password": None}, config)
        assert result.connection == {}
        assert result.visible == {"password": None}

    def test_custom_separator(self) -> None:
        """Test the configured separator is used throughout the key."""
        partitioner = SensitivePartitioner(
            SensitiveConfig(fields=frozenset({"keys[].secret"})), separator=":"
        )
        result = partitioner.partition({"keys": [{"secret": "s"}]})
        assert result.connection == {"attribute:keys:0:secret": b"s"}

    def test_map_keys_with_separator_stay_distinct(self) -> None:
        """Test map keys containing the separator do not collide with nesting."""
        config = SensitiveConfig(fields=frozenset({"creds"}))
        result = partition({"creds": {"a.b": "x", "a": {"b": "y"}, "50%": "z"}}, config)
        assert result.connection == {
            "attribute.creds.a%2Eb": b"x",
            "attribute.creds.a.b": b"y",
            "attribute.creds.50%25": b"z",
        }

    def test_escapes_custom_separator(self) -> None:
        """Test escaping follows the configured separator."""
        config = SensitiveConfig(fields=frozenset({"creds"}))
        result = partition({"creds": {"a:b": "x", "a.b": "y"}}, config, separator=":")
        assert result.connection == {"attribute:creds:a%3Ab": b"x", "attribute:creds:a.b": b"y"}

    def test_deterministic_keys(self) -> None:
        """Test the same observation always yields the same keys."""
        config = SensitiveConfig(fields=frozenset({"id", "secret"}))
        raw = {"id": "a", "secret": "b"}
        assert partition(raw, config).connection == partition(raw, config).connection

    def test_input_not_mutated(self) -> None:
        """Test partitioning never mutates the observation."""
        raw = {"keys": [{"secret": "s"}], "password": "p"}
        original = copy.deepcopy(raw)
        partition(raw, SensitiveConfig(fields=frozenset({"keys[].secret", "password"})))
        assert raw == original

    def test_extractor_receives_copy(self) -> None:
        """Test an extractor cannot alter the observation."""

        def greedy(attributes):
            attributes.clear()
            return {}

        raw = {"secret": "s"}
        partition(raw, SensitiveConfig(additional=greedy))
        assert raw == {"secret": "s"}

    def test_extractor_overrides_schema_key(self) -> None:
        """Test an extractor key wins over the schema-derived key."""
        config = SensitiveConfig(
            fields=frozenset({"secret"}),
            additional=lambda attrs: {"attribute.secret": b"override"},
        )
        assert partition({"secret": "s"}, config).connection == {"attribute.secret": b"override"}

    def test_extractor_string_payload(self) -> None:
        """Test string payloads from extractors are encoded."""
        config = SensitiveConfig(additional=lambda attrs: {"token": "t"})
        assert partition({}, config).connection == {"token": b"t"}

    def test_extractor_failure(self) -> None:
        """Test extractor exceptions are wrapped."""

        def broken(attributes):
            raise RuntimeError("boom")

        with pytest.raises(SensitiveExtractionError, match="boom"):
            partition({}, SensitiveConfig(additional=broken))

    def test_extractor_invalid_result(self) -> None:
        """Test invalid extractor results are rejected."""
        with pytest.raises(SensitiveExtractionError, match="mapping"):
            partition({}, SensitiveConfig(additional=lambda attrs: ["x"]))
        with pytest.raises(SensitiveExtractionError, match="bytes"):
            partition({}, SensitiveConfig(additional=lambda attrs: {"k": 1}))
        with pytest.raises(SensitiveExtractionError, match="non-empty"):
            partition({}, SensitiveConfig(additional=lambda attrs: {"": b"x"}))

    def test_every_sensitive_leaf_is_removed(self) -> None:
        """Test no sensitive value survives in the visible tree."""
        raw = {
            "password": "p",
            "keys": [{"secret": "s0"}, {"secret": "s1"}],
            "endpoint": "e",
        }
        partitioner = SensitivePartitioner(
            SensitiveConfig(fields=frozenset({"password"})),
            schema_paths=[FieldPath.parse("keys[].secret")],
        )
        result = partitioner.partition(raw)
        visible_text = repr(result.visible)
        for secret in ("'p'", "s0", "s1"):
            assert secret not in visible_text
        assert len(result.connection) == 3
