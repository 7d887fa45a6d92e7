"""Partitioning of observed attributes into status data and secrets.

The external tool returns secrets (passwords, keys, tokens) in the same
attribute tree as ordinary status fields. Before anything is written to the
typed resource's status the tree is split:

- visible: every attribute except the schema-declared sensitive leaves
- connection: secret payload delivered through the secret store

Schema-declared sensitive leaves land under a key derived from their path,
"attribute.<segments>", with list positions as numeric segments. These keys
are deterministic so downstream secrets do not churn between cycles. Map
keys containing the separator or "%" are percent-encoded ("a.b" becomes
"a%2Eb"), so distinct paths never share a key.

A resource may also configure an extractor that runs over the original tree
and adds friendlier keys (e.g. "aws_secret_access_key"). Duplicates between
the two are kept on purpose: consumers may rely on either name.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .config import CONNECTION_KEY_PREFIX, DEFAULT_CONNECTION_KEY_SEPARATOR
from .paths import FieldPath, Index, Key, expand
from .rawtree import DEFAULT_MAX_DEPTH, ListNode, MapNode, Node, Scalar, parse, to_python

logger = logging.getLogger(__name__)

# (raw observed attributes) -> {secret key: payload}
SensitiveExtractor = Callable[[Mapping[str, Any]], Mapping[str, bytes]]


class SensitiveExtractionError(Exception):
    """Raised when a configured extractor fails or returns invalid data."""

    pass


@dataclass(frozen=True)
class SensitiveConfig:
    """Sensitive part of a resource configuration.

    Attributes:
        fields: Raw paths declared sensitive by the schema, in canonical
            syntax ("password", "keys[].secret").
        additional: Optional extractor producing extra connection keys.
    """

    fields: frozenset[str] = field(default_factory=frozenset)
    additional: SensitiveExtractor | None = None


@dataclass(frozen=True)
class Partition:
    """Result of partitioning one observation."""

    visible: dict[str, Any]
    connection: dict[str, bytes]


def to_bytes(value: Any) -> bytes:
    """Encode a scalar attribute for the connection payload."""
    match value:
        case bytes():
            return value
        case bool():
            return b"true" if value else b"false"
        case str():
            return value.encode("utf-8")
        case int() | float():
            return str(value).encode("utf-8")
        case _:
            return json.dumps(value, sort_keys=True).encode("utf-8")


class SensitivePartitioner:
    """Splits raw attribute trees for one resource type."""

    def __init__(
        self,
        config: SensitiveConfig,
        schema_paths: Iterable[FieldPath] = (),
        separator: str = DEFAULT_CONNECTION_KEY_SEPARATOR,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        """Initialize the partitioner.

        Args:
            config: Sensitive configuration of the resource.
            schema_paths: Raw paths flagged sensitive by the observation schema.
            separator: Separator between flattened key segments.
            max_depth: Bound on observed tree nesting.
        """
        paths = {FieldPath.parse(p) for p in config.fields}
        paths.update(schema_paths)
        self._paths = sorted(paths, key=str)
        self._additional = config.additional
        self._separator = separator
        self._max_depth = max_depth

    @property
    def sensitive_paths(self) -> list[FieldPath]:
        return list(self._paths)

    def partition(self, raw: Mapping[str, Any]) -> Partition:
        """Split an observation into visible attributes and secret payload.

        The input is never mutated.

        Raises:
            SensitiveExtractionError: If the configured extractor fails.
        """
        tree = parse(raw, self._max_depth)
        visible = to_python(tree)
        connection: dict[str, bytes] = {}
        removals: list[FieldPath] = []

        for path in self._paths:
            for concrete, node in expand(tree, path):
                self._flatten_into(connection, self._connection_key(concrete), node)
                removals.append(concrete)

        for concrete in removals:
            _remove(visible, concrete)

        if self._additional is not None:
            for key, payload in self._run_extractor(self._additional, raw).items():
                if key in connection and connection[key] != payload:
                    logger.debug(
                        "Extractor overrides schema-derived connection key",
                        extra={"key": key},
                    )
                connection[key] = payload

        return Partition(visible=visible, connection=connection)

    def _connection_key(self, path: FieldPath) -> str:
        parts = [CONNECTION_KEY_PREFIX]
        for segment in path.segments:
            match segment:
                case Key(name=name):
                    parts.append(self._escape(name))
                case Index(position=position):
                    parts.append(str(position))
        return self._separator.join(parts)

    def _escape(self, segment: str) -> str:
        """Percent-encode the separator so segments cannot merge into each other."""
        escaped = segment.replace("%", "%25")
        return escaped.replace(self._separator, f"%{ord(self._separator):02X}")

    def _flatten_into(self, connection: dict[str, bytes], key: str, node: Node) -> None:
        match node:
            case Scalar(value=None):
                return
            case Scalar(value=value):
                connection[key] = to_bytes(value)
            case MapNode(entries=entries):
                for name, item in entries.items():
                    self._flatten_into(connection, f"{key}{self._separator}{self._escape(name)}", item)
            case ListNode(items=items):
                for position, item in enumerate(items):
                    self._flatten_into(connection, f"{key}{self._separator}{position}", item)

    def _run_extractor(
        self, extractor: SensitiveExtractor, raw: Mapping[str, Any]
    ) -> dict[str, bytes]:
        try:
            # Extractors get their own copy so they cannot alter the observation
            extracted = extractor(copy.deepcopy(dict(raw)))
        except Exception as e:
            raise SensitiveExtractionError(
                f"Additional connection details extraction failed: {e}"
            ) from e

        if not isinstance(extracted, Mapping):
            raise SensitiveExtractionError(
                f"Extractor must return a mapping, got {type(extracted).__name__}"
            )

        result: dict[str, bytes] = {}
        for key, payload in extracted.items():
            if not isinstance(key, str) or not key:
                raise SensitiveExtractionError(f"Connection key must be a non-empty string: {key!r}")
            if isinstance(payload, str):
                payload = payload.encode("utf-8")
            if not isinstance(payload, bytes):
                raise SensitiveExtractionError(
                    f"Connection payload for '{key}' must be bytes, got {type(payload).__name__}"
                )
            result[key] = payload
        return result


def partition(
    raw: Mapping[str, Any],
    config: SensitiveConfig,
    *,
    schema_paths: Iterable[FieldPath] = (),
    separator: str = DEFAULT_CONNECTION_KEY_SEPARATOR,
) -> Partition:
    """Convenience wrapper building a one-off partitioner."""
    return SensitivePartitioner(config, schema_paths, separator).partition(raw)


def _remove(tree: Any, path: FieldPath) -> None:
    """Delete the leaf at a concrete path from a plain tree, if present."""
    node = tree
    for segment in path.segments[:-1]:
        match segment:
            case Key(name=name) if isinstance(node, dict):
                node = node.get(name)
            case Index(position=position) if isinstance(node, list) and position < len(node):
                node = node[position]
            case _:
                return
        if node is None:
            return

    last = path.segments[-1]
    match last:
        case Key(name=name) if isinstance(node, dict):
            node.pop(name, None)
        case Index(position=position) if isinstance(node, list) and position < len(node):
            # Keep positions stable for sibling paths
            node[position] = None
