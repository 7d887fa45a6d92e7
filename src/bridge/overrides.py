"""Operator-supplied overrides for registered resources.

Resource configurations are written by the provider authors. Operators
running the engine sometimes need to adjust them without a code change,
most often to stop late initialization of a field that the external system
rejects in combination with another one.

Overrides are read from a YAML file at startup and layered onto the
registered configurations. The merged configuration is registered again,
so every path is validated against the typed schema before any
reconciliation starts.

FORMAT:
```yaml
resources:
  example_db_instance:
    lateInit:
      ignoredFields:
        - "storage_profile.size"
    references:
      user:
        kind: "iam.User"
        extractorPath: "status.at_provider.arn"
        required: true
    identity:
      disableNameInitializer: true
      omittedFields: ["name_prefix"]
```
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_OVERRIDES_FILE_SIZE_BYTES, ConfigurationError
from .late_init import LateInitConfig
from .references import ExternalNameExtractor, FieldPathExtractor, ReferenceConfig
from .registry import ResourceConfigRegistry

logger = logging.getLogger(__name__)


class OverridesError(Exception):
    """Raised when the overrides file is invalid or cannot be applied."""

    pass


@dataclass(frozen=True)
class ResourceOverride:
    """Overrides for one resource type.

    Attributes:
        ignored_fields: Extra late-init ignore paths, added to the configured ones.
        references: Reference configurations, replacing those of the same field.
        disable_name_initializer: Overrides the identity flag when set.
        omitted_fields: Extra identity-omitted top-level fields.
    """

    ignored_fields: tuple[str, ...] = ()
    references: dict[str, ReferenceConfig] = field(default_factory=dict)
    disable_name_initializer: bool | None = None
    omitted_fields: tuple[str, ...] = ()


@dataclass
class OverridesConfig:
    """Parsed overrides file."""

    resources: dict[str, ResourceOverride] = field(default_factory=dict)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> OverridesConfig:
        """Parse overrides from YAML content.

        Raises:
            OverridesError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise OverridesError(f"Invalid YAML in overrides: {e}") from e

        if data is None:
            return cls()

        if not isinstance(data, dict):
            raise OverridesError("Overrides must be a YAML object")

        raw_resources = data.get("resources", {})
        if not isinstance(raw_resources, dict):
            raise OverridesError("'resources' must be a mapping of resource type to overrides")

        resources: dict[str, ResourceOverride] = {}
        for name, entry in raw_resources.items():
            if not isinstance(entry, dict):
                raise OverridesError(f"Resource '{name}': overrides must be an object")
            resources[str(name)] = _parse_resource(str(name), entry)

        return cls(resources=resources)

    @classmethod
    def from_file(cls, path: Path) -> OverridesConfig:
        """Load overrides from a file.

        Raises:
            OverridesError: If the file cannot be read or parsed.
        """
        try:
            file_size = path.stat().st_size
        except OSError as e:
            raise OverridesError(f"Cannot stat overrides file {path}: {e}") from e

        if file_size > MAX_OVERRIDES_FILE_SIZE_BYTES:
            raise OverridesError(
                f"Overrides file exceeds maximum size of {MAX_OVERRIDES_FILE_SIZE_BYTES} bytes: {path}"
            )

        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise OverridesError(f"Cannot read overrides file: {e}") from e

        return cls.from_yaml(content)

    def apply(self, registry: ResourceConfigRegistry) -> list[str]:
        """Layer the overrides onto registered configurations.

        Returns:
            Names of the resource types that were re-registered.

        Raises:
            OverridesError: If an override names an unregistered resource
                type or a field that does not exist.
        """
        applied: list[str] = []
        for name, override in sorted(self.resources.items()):
            if name not in registry:
                raise OverridesError(f"Overrides for unregistered resource type '{name}'")

            config = registry.config(name)
            identity = replace(
                config.identity,
                omitted_fields=frozenset(config.identity.omitted_fields)
                | frozenset(override.omitted_fields),
            )
            if override.disable_name_initializer is not None:
                identity = replace(
                    identity, disable_name_initializer=override.disable_name_initializer
                )

            merged = replace(
                config,
                identity=identity,
                references={**config.references, **override.references},
                late_init=LateInitConfig(
                    ignored_fields=frozenset(config.late_init.ignored_fields)
                    | frozenset(override.ignored_fields)
                ),
            )

            try:
                registry.register(name, merged)
            except ConfigurationError as e:
                raise OverridesError(str(e)) from e

            logger.info(
                "Applied operator overrides",
                extra={
                    "resource_type": name,
                    "ignored_fields": sorted(override.ignored_fields),
                    "references": sorted(override.references),
                },
            )
            applied.append(name)
        return applied


def _parse_resource(name: str, entry: dict[str, Any]) -> ResourceOverride:
    late_init = entry.get("lateInit", {}) or {}
    if not isinstance(late_init, dict):
        raise OverridesError(f"Resource '{name}': 'lateInit' must be an object")
    ignored = _string_list(name, "lateInit.ignoredFields", late_init.get("ignoredFields", []))

    raw_refs = entry.get("references", {}) or {}
    if not isinstance(raw_refs, dict):
        raise OverridesError(f"Resource '{name}': 'references' must be an object")
    references = {
        str(field_path): _parse_reference(name, str(field_path), ref)
        for field_path, ref in raw_refs.items()
    }

    identity = entry.get("identity", {}) or {}
    if not isinstance(identity, dict):
        raise OverridesError(f"Resource '{name}': 'identity' must be an object")
    disable = identity.get("disableNameInitializer")
    if disable is not None and not isinstance(disable, bool):
        raise OverridesError(f"Resource '{name}': 'identity.disableNameInitializer' must be a boolean")
    omitted = _string_list(name, "identity.omittedFields", identity.get("omittedFields", []))

    return ResourceOverride(
        ignored_fields=tuple(ignored),
        references=references,
        disable_name_initializer=disable,
        omitted_fields=tuple(omitted),
    )


def _parse_reference(name: str, field_path: str, ref: Any) -> ReferenceConfig:
    if not isinstance(ref, dict):
        raise OverridesError(f"Resource '{name}': reference '{field_path}' must be an object")

    kind = ref.get("kind")
    if not isinstance(kind, str) or not kind:
        raise OverridesError(f"Resource '{name}': reference '{field_path}' requires 'kind'")

    required = ref.get("required", True)
    if not isinstance(required, bool):
        raise OverridesError(f"Resource '{name}': reference '{field_path}' 'required' must be a boolean")

    try:
        extractor_path = ref.get("extractorPath")
        extractor = (
            FieldPathExtractor(str(extractor_path)) if extractor_path else ExternalNameExtractor()
        )
        return ReferenceConfig(
            target=kind,
            extractor=extractor,
            ref_field_name=ref.get("refFieldName"),
            selector_field_name=ref.get("selectorFieldName"),
            required=required,
        )
    except ConfigurationError as e:
        raise OverridesError(f"Resource '{name}': reference '{field_path}': {e}") from e


def _string_list(name: str, key: str, value: Any) -> list[str]:
    if not isinstance(value, list):
        raise OverridesError(f"Resource '{name}': '{key}' must be a list")
    for item in value:
        if not isinstance(item, str) or not item:
            raise OverridesError(f"Resource '{name}': '{key}' entries must be non-empty strings")
    return list(value)
