"""Per-resource-type configuration and its registry.

Each supported external resource type is registered once at process start
with a ResourceConfig. Configurations are immutable after registration and
shared by every concurrent reconciliation of that type, so registration
freezes them and validates every canonical path they mention against the
typed schema (fail fast).

USAGE:
```python
registry = ResourceConfigRegistry()
registry.register(
    "example_bucket",
    ResourceConfig(
        kind="Bucket",
        parameters_model=BucketParameters,
        observation_model=BucketObservation,
        identity=IdentityConfig(
            strategy=ParameterAsIdentifier("bucket", extra_omitted=("bucket_prefix",)),
        ),
    ),
)
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from pydantic import BaseModel

from .config import (
    DEFAULT_CONNECTION_KEY_SEPARATOR,
    DEFAULT_LOOKUP_TIMEOUT_SECONDS,
    DEFAULT_MAX_TREE_DEPTH,
    ConfigurationError,
    EngineConfig,
)
from .identity import IdentityCodec, IdentityConfig
from .late_init import LateInitConfig, LateInitializer
from .models import ResourceObservation, ResourceParameters
from .paths import FieldPath, Key, SchemaIndex
from .references import ReferenceConfig, ReferenceResolver
from .sensitive import SensitiveConfig, SensitivePartitioner

logger = logging.getLogger(__name__)


class UnknownResourceError(KeyError):
    """Raised when no configuration is registered for a resource type."""

    pass


@dataclass(frozen=True)
class ResourceConfig:
    """Author-supplied configuration of one external resource type.

    Attributes:
        kind: Typed resource kind, used in logs and references.
        parameters_model: Typed desired-state model (spec.for_provider).
        observation_model: Typed observed-state model (status.at_provider).
        identity: Identity sub-configuration.
        references: Field path -> reference sub-configuration.
        sensitive: Sensitive sub-configuration.
        late_init: Late-init sub-configuration.
    """

    kind: str = ""
    parameters_model: type[BaseModel] = ResourceParameters
    observation_model: type[BaseModel] = ResourceObservation
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    references: Mapping[str, ReferenceConfig] = field(default_factory=dict)
    sensitive: SensitiveConfig = field(default_factory=SensitiveConfig)
    late_init: LateInitConfig = field(default_factory=LateInitConfig)

    def frozen(self) -> ResourceConfig:
        """Return a copy whose collections cannot be mutated."""
        return replace(
            self,
            references=MappingProxyType(dict(self.references)),
            identity=replace(
                self.identity, omitted_fields=frozenset(self.identity.omitted_fields)
            ),
            sensitive=replace(self.sensitive, fields=frozenset(self.sensitive.fields)),
            late_init=replace(
                self.late_init, ignored_fields=frozenset(self.late_init.ignored_fields)
            ),
        )


@dataclass(frozen=True)
class RegisteredResource:
    """A validated configuration with its pre-built components.

    Components are built once at registration and are read-only, so they can
    be shared across reconciliations without locking.
    """

    name: str
    config: ResourceConfig
    parameters_index: SchemaIndex
    observation_index: SchemaIndex
    identity: IdentityCodec
    late_init: LateInitializer
    references: ReferenceResolver
    sensitive: SensitivePartitioner


class ResourceConfigRegistry:
    """Registry of resource configurations keyed by external type name.

    Built once at startup and passed explicitly to the engine.
    """

    def __init__(
        self,
        lookup_timeout_seconds: float | None = None,
        connection_key_separator: str | None = None,
        max_tree_depth: int | None = None,
    ) -> None:
        self._lookup_timeout = lookup_timeout_seconds or DEFAULT_LOOKUP_TIMEOUT_SECONDS
        self._separator = connection_key_separator or DEFAULT_CONNECTION_KEY_SEPARATOR
        self._max_depth = max_tree_depth or DEFAULT_MAX_TREE_DEPTH
        self._resources: dict[str, RegisteredResource] = {}

    @classmethod
    def from_config(cls, config: EngineConfig) -> ResourceConfigRegistry:
        """Create an empty registry using engine-wide settings."""
        return cls(
            lookup_timeout_seconds=config.lookup_timeout_seconds,
            connection_key_separator=config.connection_key_separator,
            max_tree_depth=config.max_tree_depth,
        )

    def register(self, name: str, config: ResourceConfig) -> RegisteredResource:
        """Validate and register a resource configuration.

        Later registrations for the same name replace earlier ones.

        Args:
            name: External resource type name (e.g. "example_bucket").
            config: Resource configuration.

        Returns:
            The registered resource with its components.

        Raises:
            ConfigurationError: If the configuration references fields that
                do not exist in the typed schema.
        """
        if not name:
            raise ConfigurationError("Resource type name cannot be empty")

        config = config.frozen()
        try:
            registered = self._build(name, config)
        except ConfigurationError as e:
            raise ConfigurationError(f"Invalid configuration for '{name}': {e}") from e

        if name in self._resources:
            logger.warning(
                "Resource configuration registered twice, last registration wins",
                extra={"resource_type": name},
            )
        self._resources[name] = registered
        logger.debug(
            "Registered resource configuration",
            extra={
                "resource_type": name,
                "kind": config.kind,
                "references": sorted(config.references),
                "ignored_fields": sorted(config.late_init.ignored_fields),
            },
        )
        return registered

    def _build(self, name: str, config: ResourceConfig) -> RegisteredResource:
        parameters_index = SchemaIndex.for_model(config.parameters_model)
        observation_index = SchemaIndex.for_model(config.observation_model)

        omitted = config.identity.effective_omitted_fields
        for omitted_field in sorted(omitted):
            if parameters_index.get(FieldPath((Key(omitted_field),))) is not None:
                # Kept out of the merge, but the schema should not expose it
                logger.warning(
                    "Identity-omitted field is present in the parameters schema",
                    extra={"resource_type": name, "field": omitted_field},
                )

        # The bare base observation model declares nothing to check against
        check_sensitive = bool(observation_index.fields())
        for path in sorted(config.sensitive.fields):
            try:
                parsed = FieldPath.parse(path)
            except ValueError as e:
                raise ConfigurationError(f"Invalid sensitive field path: {e}") from e
            if check_sensitive and not observation_index.covers_raw_path(parsed):
                raise ConfigurationError(
                    f"Sensitive field path '{path}' does not exist in "
                    f"{config.observation_model.__name__}"
                )

        return RegisteredResource(
            name=name,
            config=config,
            parameters_index=parameters_index,
            observation_index=observation_index,
            identity=IdentityCodec(config.identity),
            late_init=LateInitializer(
                parameters_index,
                config.late_init,
                omitted_fields=omitted,
                max_depth=self._max_depth,
            ),
            references=ReferenceResolver(
                parameters_index,
                config.references,
                timeout_seconds=self._lookup_timeout,
            ),
            sensitive=SensitivePartitioner(
                config.sensitive,
                schema_paths=observation_index.sensitive_paths(),
                separator=self._separator,
                max_depth=self._max_depth,
            ),
        )

    def get(self, name: str) -> RegisteredResource:
        """Return the registered resource for a type name.

        Raises:
            UnknownResourceError: If the type was never registered.
        """
        try:
            return self._resources[name]
        except KeyError:
            raise UnknownResourceError(f"No configuration registered for '{name}'") from None

    def config(self, name: str) -> ResourceConfig:
        return self.get(name).config

    def names(self) -> list[str]:
        return sorted(self._resources)

    def __contains__(self, name: object) -> bool:
        return name in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self) -> Iterator[RegisteredResource]:
        return iter(self._resources[name] for name in self.names())
