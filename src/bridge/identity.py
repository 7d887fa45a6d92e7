"""External identity encoding and decoding.

The external tool addresses each resource by an identity string (its import
id or a naming argument). The typed resource carries that identity in a
single annotation. This module moves it between the two:

- decode: derive the identity from an observation, the existing annotation,
  or the resource's own name (the "name initializer")
- encode: inject the identity into the outgoing argument map

How the identity maps onto arguments differs per resource type, so each
registration picks an IdentityStrategy. Strategies are pure: they never
mutate their inputs and return fresh maps.

EXAMPLES:
- S3-style buckets: ParameterAsIdentifier("bucket"), identity is the name
- VPC-style resources: IdentifierFromProvider(), identity is allocated by
  the provider and only known after creation
- Nested resources: TemplatedIdentifier("{zone_id}/{external_name}")
"""

from __future__ import annotations

import logging
import re
import string
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .models import ManagedResource

logger = logging.getLogger(__name__)

# Key that the external tool uses for the resource id in its state
DEFAULT_ID_ATTRIBUTE = "id"

# Placeholder naming the identity inside identifier templates
EXTERNAL_NAME_PLACEHOLDER = "external_name"


class IdentityUndetermined(Exception):
    """Raised when no external identity can be derived.

    Happens when a resource has no identity annotation, the observation
    does not carry one, and the name initializer is disabled. The resource
    is not created; the caller retries on its own schedule.
    """

    pass


def _string_value(value: Any) -> str | None:
    """Accept non-empty strings and numbers as identity values."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, int | float):
        return str(value)
    return None


# =============================================================================
# Strategies
# =============================================================================


class IdentityStrategy:
    """Maps an identity string onto arguments and back.

    Subclasses override what they need. The defaults describe a resource
    whose identity is not represented in its arguments at all.
    """

    # Whether the resource's own name is a valid identity before creation
    name_initializer: bool = True

    # Top-level argument names redundant with the identity
    omitted_fields: frozenset[str] = frozenset()

    @property
    def injects_arguments(self) -> bool:
        """True when set_identifier_argument changes the argument map."""
        return False

    def set_identifier_argument(self, args: Mapping[str, Any], identity: str) -> dict[str, Any]:
        """Return a copy of args carrying the identity."""
        return dict(args)

    def get_external_name(self, state: Mapping[str, Any]) -> str | None:
        """Extract the identity from observed state, if present."""
        return _string_value(state.get(DEFAULT_ID_ATTRIBUTE))

    def get_id(self, identity: str, args: Mapping[str, Any]) -> str:
        """Return the id the external tool uses to import the resource."""
        return identity

    def parse_id(self, import_id: str) -> str | None:
        """Inverse of get_id: recover the identity from an import id."""
        return import_id or None


@dataclass(frozen=True)
class ParameterAsIdentifier(IdentityStrategy):
    """Identity is the value of one top-level argument.

    Attributes:
        param: Argument carrying the identity (e.g. "bucket").
        extra_omitted: Further arguments hidden from the typed spec because
            they conflict with the identity (e.g. "bucket_prefix").
    """

    param: str = "name"
    extra_omitted: tuple[str, ...] = ()

    @property
    def omitted_fields(self) -> frozenset[str]:  # type: ignore[override]
        return frozenset((self.param, *self.extra_omitted))

    @property
    def injects_arguments(self) -> bool:
        return True

    def set_identifier_argument(self, args: Mapping[str, Any], identity: str) -> dict[str, Any]:
        updated = dict(args)
        updated[self.param] = identity
        return updated

    def get_external_name(self, state: Mapping[str, Any]) -> str | None:
        # The id attribute usually mirrors the naming argument
        return _string_value(state.get(self.param)) or super().get_external_name(state)


@dataclass(frozen=True)
class NameAsIdentifier(ParameterAsIdentifier):
    """Identity is the "name" argument."""

    param: str = "name"


@dataclass(frozen=True)
class IdentifierFromProvider(IdentityStrategy):
    """Identity is allocated by the provider (e.g. a numeric id).

    The name initializer is disabled: the identity is unknown until the
    external tool reports it after creation.
    """

    id_attribute: str = DEFAULT_ID_ATTRIBUTE
    name_initializer: bool = False

    def get_external_name(self, state: Mapping[str, Any]) -> str | None:
        return _string_value(state.get(self.id_attribute))


@dataclass(frozen=True)
class TemplatedIdentifier(IdentityStrategy):
    """Identity is embedded in a templated import id.

    The template uses str.format fields: "{external_name}" is the identity,
    any other field is read from the argument map, e.g.
    "{zone_id}/{external_name}".

    Attributes:
        template: Import id template.
        name_field: Optional argument that also receives the identity.
        id_attribute: State attribute holding the rendered import id.
    """

    template: str = "{external_name}"
    name_field: str | None = None
    id_attribute: str = DEFAULT_ID_ATTRIBUTE

    def __post_init__(self) -> None:
        fields = self.template_fields()
        if EXTERNAL_NAME_PLACEHOLDER not in fields:
            raise ValueError(
                f"Identifier template must contain {{{EXTERNAL_NAME_PLACEHOLDER}}}: {self.template}"
            )
        if len(fields) != len(set(fields)):
            raise ValueError(f"Identifier template repeats a field: {self.template}")

    @property
    def omitted_fields(self) -> frozenset[str]:  # type: ignore[override]
        return frozenset((self.name_field,)) if self.name_field else frozenset()

    @property
    def injects_arguments(self) -> bool:
        return self.name_field is not None

    def template_fields(self) -> list[str]:
        return [
            name
            for _, name, _, _ in string.Formatter().parse(self.template)
            if name is not None
        ]

    def set_identifier_argument(self, args: Mapping[str, Any], identity: str) -> dict[str, Any]:
        updated = dict(args)
        if self.name_field:
            updated[self.name_field] = identity
        return updated

    def get_external_name(self, state: Mapping[str, Any]) -> str | None:
        rendered = _string_value(state.get(self.id_attribute))
        if rendered is None:
            return None
        return self.parse_id(rendered)

    def get_id(self, identity: str, args: Mapping[str, Any]) -> str:
        values: dict[str, Any] = {}
        for name in self.template_fields():
            if name == EXTERNAL_NAME_PLACEHOLDER:
                values[name] = identity
            elif _string_value(args.get(name)) is not None:
                values[name] = args[name]
            else:
                raise IdentityUndetermined(
                    f"Import id template {self.template!r} needs argument '{name}'"
                )
        return self.template.format(**values)

    def parse_id(self, import_id: str) -> str | None:
        match = self._pattern().fullmatch(import_id)
        if match is None:
            return None
        return match.group(EXTERNAL_NAME_PLACEHOLDER) or None

    def _pattern(self) -> re.Pattern[str]:
        regex = ""
        for literal, name, _, _ in string.Formatter().parse(self.template):
            regex += re.escape(literal)
            if name == EXTERNAL_NAME_PLACEHOLDER:
                regex += f"(?P<{EXTERNAL_NAME_PLACEHOLDER}>.+)"
            elif name is not None:
                regex += "[^/]+"
        return re.compile(regex)


@dataclass(frozen=True)
class FunctionIdentifier(IdentityStrategy):
    """Identity handled by author-supplied pure functions.

    Attributes:
        set_fn: (args, identity) -> new args. None means no injection.
        get_fn: state -> identity or None. Defaults to the "id" attribute.
        omitted: Arguments hidden from the typed spec.
        name_initializer: Whether the resource name is a valid identity.
    """

    set_fn: Callable[[Mapping[str, Any], str], dict[str, Any]] | None = None
    get_fn: Callable[[Mapping[str, Any]], str | None] | None = None
    omitted: frozenset[str] = field(default_factory=frozenset)
    name_initializer: bool = True

    @property
    def omitted_fields(self) -> frozenset[str]:  # type: ignore[override]
        return self.omitted

    @property
    def injects_arguments(self) -> bool:
        return self.set_fn is not None

    def set_identifier_argument(self, args: Mapping[str, Any], identity: str) -> dict[str, Any]:
        if self.set_fn is None:
            return dict(args)
        return dict(self.set_fn(dict(args), identity))

    def get_external_name(self, state: Mapping[str, Any]) -> str | None:
        if self.get_fn is None:
            return super().get_external_name(state)
        return _string_value(self.get_fn(state))


# =============================================================================
# Configuration and codec
# =============================================================================


@dataclass(frozen=True)
class IdentityConfig:
    """Identity part of a resource configuration.

    Attributes:
        strategy: How identity maps onto arguments and state.
        omitted_fields: Extra top-level fields hidden from the typed spec.
        disable_name_initializer: Never default the identity to the
            resource's name. Required for provider-assigned identities.
    """

    strategy: IdentityStrategy = field(default_factory=NameAsIdentifier)
    omitted_fields: frozenset[str] = field(default_factory=frozenset)
    disable_name_initializer: bool = False

    @property
    def effective_omitted_fields(self) -> frozenset[str]:
        return frozenset(self.omitted_fields) | self.strategy.omitted_fields

    @property
    def name_initializer_enabled(self) -> bool:
        return self.strategy.name_initializer and not self.disable_name_initializer


class IdentityCodec:
    """Encodes and decodes external identities for one resource type."""

    def __init__(self, config: IdentityConfig) -> None:
        self._config = config

    @property
    def config(self) -> IdentityConfig:
        return self._config

    def decode(
        self,
        observation: Mapping[str, Any] | None,
        *,
        resource_name: str,
        current: str | None = None,
    ) -> str:
        """Determine the external identity.

        Order: identity found in the observation, then the current
        annotation, then the resource name if the name initializer is
        enabled.

        Args:
            observation: Raw observed state, or None before creation.
            resource_name: metadata.name of the typed resource.
            current: Existing identity annotation, if any.

        Returns:
            The identity string.

        Raises:
            IdentityUndetermined: If no source yields an identity.
        """
        observed = None
        if observation:
            observed = self._config.strategy.get_external_name(observation)

        if observed is not None:
            if current is not None and observed != current:
                logger.warning(
                    "Observed identity differs from annotation, updating",
                    extra={
                        "resource": resource_name,
                        "annotation": current,
                        "observed": observed,
                    },
                )
            return observed

        if current:
            return current

        if self._config.name_initializer_enabled:
            return resource_name

        raise IdentityUndetermined(
            f"Identity of '{resource_name}' is assigned by the provider and was not "
            "found in the observation; the resource cannot be created yet"
        )

    def decode_import_id(self, import_id: str) -> str:
        """Recover the identity from an import id.

        Raises:
            IdentityUndetermined: If the import id does not fit the strategy.
        """
        identity = self._config.strategy.parse_id(import_id)
        if identity is None:
            raise IdentityUndetermined(f"Cannot derive identity from import id {import_id!r}")
        return identity

    def encode(self, identity: str | None, args: Mapping[str, Any]) -> dict[str, Any]:
        """Inject the identity into a copy of the argument map.

        Idempotent: encoding into an already-correct map returns an equal map.
        """
        if not identity or not self._config.strategy.injects_arguments:
            return dict(args)
        return self._config.strategy.set_identifier_argument(args, identity)

    def import_id(self, identity: str, args: Mapping[str, Any]) -> str:
        return self._config.strategy.get_id(identity, args)

    def strip_omitted(self, args: Mapping[str, Any]) -> dict[str, Any]:
        """Drop identity-redundant top-level fields from a raw map."""
        omitted = self._config.effective_omitted_fields
        return {key: value for key, value in args.items() if key not in omitted}

    def initialize(self, resource: ManagedResource) -> bool:
        """Default the identity annotation to the resource name.

        Returns:
            True if the annotation was set by this call.
        """
        if resource.get_external_name() is not None:
            return False
        if not self._config.name_initializer_enabled:
            return False
        resource.set_external_name(resource.metadata.name)
        logger.debug(
            "Initialized identity from resource name",
            extra={"resource": resource.metadata.name},
        )
        return True
