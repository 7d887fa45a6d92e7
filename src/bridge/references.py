"""Resolution of references between managed resources.

A typed resource can depend on another one: a subnet needs the id of its
VPC, a policy attachment needs the name of a user. The typed spec declares
the dependency next to the argument it feeds:

    vpc_id: str | None             <- literal argument
    vpc_id_ref: Reference | None   <- {"name": "my-vpc"}
    vpc_id_selector: Selector | None

Before each apply the resolver looks up every referenced resource, extracts
a value from it (by default its external identity) and stages that value as
an override for the argument. Overrides are applied to the outgoing
argument map, never to the stored spec.

DESIGN:
- Partial success: one unresolvable reference does not stop the others
- Fail closed: lookup failures report the field missing, the caller blocks
  submission for this cycle
- Deadline: the whole resolution runs under the caller's timeout; on
  timeout nothing is staged and the result is not ready
- No retries: the next reconciliation resolves again
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .config import DEFAULT_LOOKUP_TIMEOUT_SECONDS, ConfigurationError
from .models import ManagedResource, Reference, ResolutionPolicy, Selector
from .paths import FieldKind, FieldPath, Index, Key, SchemaIndex, resolve
from .rawtree import Scalar, parse

logger = logging.getLogger(__name__)

# (kind, name) -> referenced resource, or None when it does not exist
LookupFn = Callable[[str, str], Awaitable[ManagedResource | None]]

# (kind, selector) -> name of the selected resource, or None
SelectorFn = Callable[[str, Selector], Awaitable[str | None]]

REF_FIELD_SUFFIX = "_ref"
SELECTOR_FIELD_SUFFIX = "_selector"


class ReferenceNotReady(Exception):
    """Raised when required references cannot be resolved yet.

    Not fatal: the resource is not submitted in this cycle and the next
    reconciliation tries again.
    """

    def __init__(self, missing: list[str], message: str | None = None) -> None:
        self.missing = list(missing)
        super().__init__(message or f"References not ready: {', '.join(self.missing)}")


# =============================================================================
# Targets and extractors
# =============================================================================


@dataclass(frozen=True)
class ReferenceTarget:
    """Kind of the referenced resource, optionally package-qualified."""

    kind: str
    package: str | None = None

    @classmethod
    def parse(cls, value: str) -> ReferenceTarget:
        """Parse "Kind" or "package.Kind"."""
        package, _, kind = value.rpartition(".")
        if not kind:
            raise ConfigurationError(f"Reference target kind cannot be empty: {value!r}")
        return cls(kind=kind, package=package or None)

    @property
    def qualified_kind(self) -> str:
        return f"{self.package}.{self.kind}" if self.package else self.kind


class ReferenceExtractor:
    """Extracts the argument value from a referenced resource."""

    def extract(self, referent: ManagedResource) -> str | None:
        raise NotImplementedError


@dataclass(frozen=True)
class ExternalNameExtractor(ReferenceExtractor):
    """Default extractor: the referent's external identity."""

    def extract(self, referent: ManagedResource) -> str | None:
        return referent.get_external_name()


@dataclass(frozen=True)
class FieldPathExtractor(ReferenceExtractor):
    """Reads a scalar at a path of the referent, e.g. "status.at_provider.arn"."""

    path: str

    def __post_init__(self) -> None:
        try:
            parsed = FieldPath.parse(self.path)
        except ValueError as e:
            raise ConfigurationError(f"Invalid extractor path: {e}") from e
        if parsed.has_repetition:
            raise ConfigurationError(f"Extractor path cannot repeat: {self.path}")

    def extract(self, referent: ManagedResource) -> str | None:
        tree = parse(referent.model_dump(mode="json"))
        node = resolve(tree, FieldPath.parse(self.path))
        if not isinstance(node, Scalar) or node.value is None or isinstance(node.value, bool):
            return None
        return str(node.value) or None


@dataclass(frozen=True)
class ReferenceConfig:
    """Reference part of a resource configuration, for one field.

    Attributes:
        target: Referenced kind ("User" or "iam.User").
        extractor: Value extraction, defaults to the external identity.
        ref_field_name: Override for the "<field>_ref" accessor.
        selector_field_name: Override for the "<field>_selector" accessor.
        required: Whether an unresolved reference blocks submission. A
            reference's own policy takes precedence.
    """

    target: ReferenceTarget | str
    extractor: ReferenceExtractor = field(default_factory=ExternalNameExtractor)
    ref_field_name: str | None = None
    selector_field_name: str | None = None
    required: bool = True

    def __post_init__(self) -> None:
        if isinstance(self.target, str):
            object.__setattr__(self, "target", ReferenceTarget.parse(self.target))

    @property
    def kind(self) -> str:
        if isinstance(self.target, str):
            return ReferenceTarget.parse(self.target).qualified_kind
        return self.target.qualified_kind


@dataclass
class ReferenceResolution:
    """Outcome of resolving all references of one resource.

    Attributes:
        overrides: Concrete typed path -> extracted value.
        ready: False when any required reference is missing.
        missing: Concrete paths of unresolved required references.
        errors: Concrete path -> reason, for missing and skipped fields.
        timed_out: The caller's deadline expired.
    """

    overrides: dict[str, Any] = field(default_factory=dict)
    ready: bool = True
    missing: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    timed_out: bool = False

    def raise_if_not_ready(self) -> None:
        if not self.ready:
            reason = "reference resolution timed out" if self.timed_out else None
            raise ReferenceNotReady(
                self.missing,
                f"{reason}: {', '.join(self.missing or self.errors)}" if reason else None,
            )


# =============================================================================
# Resolver
# =============================================================================


@dataclass(frozen=True)
class _Binding:
    field_path: FieldPath
    ref_attribute: str
    selector_attribute: str | None
    config: ReferenceConfig


@dataclass(frozen=True)
class _Pending:
    path: str
    config: ReferenceConfig
    reference: Reference | None
    selector: Selector | None
    required: bool


class ReferenceResolver:
    """Resolves configured references for one resource type."""

    def __init__(
        self,
        index: SchemaIndex,
        references: Mapping[str, ReferenceConfig],
        timeout_seconds: float = DEFAULT_LOOKUP_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the resolver and validate the reference fields.

        Raises:
            ConfigurationError: If a referenced field or its accessors do not
                exist in the parameters schema.
        """
        self._index = index
        self._timeout = timeout_seconds
        self._bindings = [
            self._bind(path, config) for path, config in sorted(references.items())
        ]

    def _bind(self, path: str, config: ReferenceConfig) -> _Binding:
        field_path = self._index.canonicalize(path)
        accessor = self._index.require(field_path)
        if accessor.kind != FieldKind.SCALAR:
            raise ConfigurationError(f"Reference field '{path}' must be a scalar argument")

        parent = FieldPath(field_path.segments[:-1])
        ref_attribute = config.ref_field_name or accessor.attribute + REF_FIELD_SUFFIX
        ref_accessor = self._index.require(parent.child(ref_attribute))
        if ref_accessor.model is not Reference:
            raise ConfigurationError(
                f"Reference accessor '{ref_accessor.path}' must be typed Reference"
            )

        selector_attribute: str | None = config.selector_field_name
        if selector_attribute is not None:
            self._index.require(parent.child(selector_attribute))
        elif self._index.get(parent.child(accessor.attribute + SELECTOR_FIELD_SUFFIX)):
            selector_attribute = accessor.attribute + SELECTOR_FIELD_SUFFIX

        return _Binding(field_path, ref_attribute, selector_attribute, config)

    @property
    def fields(self) -> list[str]:
        return [str(binding.field_path) for binding in self._bindings]

    async def resolve(
        self,
        spec: Any,
        lookup_fn: LookupFn,
        selector_fn: SelectorFn | None = None,
        timeout_seconds: float | None = None,
    ) -> ReferenceResolution:
        """Resolve every configured reference of a spec.

        Args:
            spec: Desired state (spec.for_provider).
            lookup_fn: Async lookup of referenced resources.
            selector_fn: Optional async label-selector resolution.
            timeout_seconds: Caller deadline, defaults to the configured one.

        Returns:
            ReferenceResolution. On timeout no overrides are staged.
        """
        if not self._bindings:
            return ReferenceResolution()

        pending = self._pending(spec)
        if not pending:
            return ReferenceResolution()

        timeout = self._timeout if timeout_seconds is None else timeout_seconds
        try:
            return await asyncio.wait_for(
                self._resolve_all(pending, lookup_fn, selector_fn),
                timeout=timeout,
            )
        except TimeoutError:
            referenced = [item.path for item in pending]
            logger.error(
                "Reference resolution timed out",
                extra={"timeout_seconds": timeout, "fields": referenced},
            )
            return ReferenceResolution(
                ready=False,
                missing=[item.path for item in pending if item.required],
                errors={path: "timed out" for path in referenced},
                timed_out=True,
            )

    def _pending(self, spec: Any) -> list[_Pending]:
        """Collect the references actually set on the spec."""
        pending: list[_Pending] = []
        for binding in self._bindings:
            for location in self._index.locate(spec, binding.field_path):
                parent = location.parent
                reference = getattr(parent, binding.ref_attribute, None)
                selector = (
                    getattr(parent, binding.selector_attribute, None)
                    if binding.selector_attribute
                    else None
                )
                if reference is None and selector is None:
                    continue
                pending.append(
                    _Pending(
                        path=str(location.path),
                        config=binding.config,
                        reference=reference,
                        selector=selector,
                        required=_is_required(binding.config, reference, selector),
                    )
                )
        return pending

    async def _resolve_all(
        self,
        pending: list[_Pending],
        lookup_fn: LookupFn,
        selector_fn: SelectorFn | None,
    ) -> ReferenceResolution:
        resolution = ReferenceResolution()

        for item in pending:
            value, reason = await self._resolve_one(
                item.config, item.reference, item.selector, lookup_fn, selector_fn
            )

            if value is not None:
                resolution.overrides[item.path] = value
                logger.debug(
                    "Reference resolved",
                    extra={"field": item.path, "kind": item.config.kind},
                )
                continue

            resolution.errors[item.path] = reason
            if item.required:
                resolution.missing.append(item.path)
                logger.warning(
                    "Required reference not resolved",
                    extra={"field": item.path, "kind": item.config.kind, "reason": reason},
                )
            else:
                logger.info(
                    "Optional reference not resolved, skipping",
                    extra={"field": item.path, "kind": item.config.kind, "reason": reason},
                )

        resolution.ready = not resolution.missing
        return resolution

    async def _resolve_one(
        self,
        config: ReferenceConfig,
        reference: Reference | None,
        selector: Selector | None,
        lookup_fn: LookupFn,
        selector_fn: SelectorFn | None,
    ) -> tuple[str | None, str]:
        """Resolve a single reference. Returns (value, reason_if_none)."""
        kind = config.kind

        if reference is not None:
            name: str | None = reference.name
        elif selector_fn is None:
            return None, "selector set but no selector resolution available"
        else:
            try:
                name = await selector_fn(kind, selector)  # type: ignore[arg-type]
            except Exception as e:
                # Fail closed on selector errors
                logger.error(
                    "Selector resolution failed",
                    extra={"kind": kind, "error": str(e), "error_type": type(e).__name__},
                )
                return None, f"selector resolution failed: {e}"
            if not name:
                return None, "no resource matches selector"

        try:
            referent = await lookup_fn(kind, name)
        except Exception as e:
            # Fail closed on lookup errors; the caller retries the reconciliation
            logger.error(
                "Reference lookup failed",
                extra={"kind": kind, "referent": name, "error": str(e), "error_type": type(e).__name__},
            )
            return None, f"lookup failed: {e}"

        if referent is None:
            return None, f"{kind} '{name}' not found"

        value = config.extractor.extract(referent)
        if not value:
            return None, f"{kind} '{name}' has no value to extract yet"
        return value, ""


def _is_required(
    config: ReferenceConfig,
    reference: Reference | None,
    selector: Selector | None,
) -> bool:
    source = reference if reference is not None else selector
    if source is not None and source.policy is not None:
        return source.policy.resolution == ResolutionPolicy.REQUIRED
    return config.required


def apply_overrides(
    args: Mapping[str, Any],
    overrides: Mapping[str, Any],
    index: SchemaIndex,
) -> dict[str, Any]:
    """Write resolved values into a copy of the outgoing argument map.

    Args:
        args: Argument map keyed by raw attribute names.
        overrides: Concrete typed path -> value, from ReferenceResolution.
        index: Path index of the parameters model, for raw key translation.

    Returns:
        New argument map.
    """
    updated = copy.deepcopy(dict(args))
    for typed_path, value in sorted(overrides.items()):
        raw_path = index.to_raw_path(FieldPath.parse(typed_path))
        if not _set_path(updated, raw_path, value):
            logger.warning(
                "Cannot place resolved reference in arguments",
                extra={"field": typed_path, "raw_path": str(raw_path)},
            )
    return updated


def _set_path(tree: dict[str, Any], path: FieldPath, value: Any) -> bool:
    node: Any = tree
    segments = path.segments
    for position, segment in enumerate(segments[:-1]):
        following = segments[position + 1]
        match segment:
            case Key(name=name) if isinstance(node, dict):
                if node.get(name) is None:
                    if isinstance(following, Index):
                        return False
                    node[name] = {}
                node = node[name]
            case Index(position=index) if isinstance(node, list) and index < len(node):
                node = node[index]
            case _:
                return False

    last = segments[-1]
    if isinstance(last, Key) and isinstance(node, dict):
        node[last.name] = value
        return True
    return False
