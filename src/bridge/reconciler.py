"""Reconciliation entry points tying the engine components together.

Per managed resource and cycle the external driver calls:

1. observe() after reading state from the external tool
   - decode the external identity into the annotation
   - late-initialize unset spec fields from the observation
   - split the observation into status fields and connection secrets
2. prepare_apply() before submitting arguments to the external tool
   - default the identity to the resource name (name initializer)
   - resolve references into literal argument values
   - encode the identity into the argument map

Failures never raise out of these calls; they are reported in the result
and as a non-ready condition with a human-readable message on the resource.
Fields that could not be filled stay unset and are retried next cycle.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from .config import EngineConfig
from .identity import IdentityUndetermined
from .models import Condition, ConditionReason, ConditionType, ManagedResource
from .overrides import OverridesConfig
from .rawtree import RawTreeError
from .references import LookupFn, ReferenceNotReady, SelectorFn, apply_overrides
from .registry import RegisteredResource, ResourceConfigRegistry
from .sensitive import SensitiveExtractionError

logger = logging.getLogger(__name__)

# Bound on repeated status validation passes when dropping invalid fields
MAX_STATUS_VALIDATION_PASSES = 5


@dataclass
class ObserveResult:
    """Result of processing one observation."""

    resource_type: str
    name: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    external_name: str | None = None
    identity_changed: bool = False
    late_initialized: list[str] = field(default_factory=list)
    skipped_fields: list[str] = field(default_factory=list)
    connection: dict[str, bytes] = field(default_factory=dict)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def spec_changed(self) -> bool:
        """True when the resource must be persisted (annotation or spec)."""
        return self.identity_changed or bool(self.late_initialized)


@dataclass
class ApplyResult:
    """Result of preparing the arguments of one apply."""

    resource_type: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    external_name: str | None = None
    import_id: str | None = None
    identity_initialized: bool = False
    missing_references: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ready(self) -> bool:
        """True when the arguments may be submitted to the external tool."""
        return self.error is None


class ReconcileEngine:
    """Schema-agnostic engine shared by every reconciliation.

    Operator overrides are layered onto the registry once, at construction.
    Afterwards the registry is only read, so one engine instance can serve
    any number of concurrent reconciliations of different resources.
    """

    def __init__(
        self,
        registry: ResourceConfigRegistry,
        config: EngineConfig | None = None,
    ) -> None:
        """Initialize the engine and layer operator overrides onto the registry.

        Raises:
            OverridesError: If the configured overrides file is invalid.
        """
        self._registry = registry
        self._config = config or EngineConfig()

        if self._config.overrides_file is not None:
            applied = OverridesConfig.from_file(self._config.overrides_file).apply(registry)
            logger.info(
                "Loaded operator overrides",
                extra={"path": str(self._config.overrides_file), "resource_types": applied},
            )

    @property
    def registry(self) -> ResourceConfigRegistry:
        return self._registry

    def observe(
        self,
        resource: ManagedResource,
        observation: Mapping[str, Any] | None,
        resource_type: str,
    ) -> ObserveResult:
        """Fold an observation from the external tool into the resource.

        Mutates the resource in place: identity annotation, spec
        (late-initialized fields), status.at_provider and conditions.

        Args:
            resource: Typed managed resource.
            observation: Raw attributes from the external tool, None if the
                resource does not exist externally.
            resource_type: External resource type name.

        Returns:
            ObserveResult with the connection payload to store as a secret.
        """
        registered = self._registry.get(resource_type)
        result = ObserveResult(resource_type=resource_type, name=resource.name)
        raw = dict(observation) if observation else {}

        try:
            current = resource.get_external_name()
            result.external_name = current

            if raw:
                # An existing external resource must yield an identity
                identity = registered.identity.decode(
                    raw, resource_name=resource.name, current=current
                )
                if identity != current:
                    resource.set_external_name(identity)
                    result.identity_changed = True
                result.external_name = identity

                self._late_initialize(resource, registered, raw, result)
                self._update_status(resource, registered, raw, result)
                resource.status.set_condition(
                    Condition(
                        type=ConditionType.READY,
                        status=True,
                        reason=ConditionReason.AVAILABLE,
                    )
                )
            else:
                resource.status.set_condition(
                    Condition(
                        type=ConditionType.READY,
                        status=False,
                        reason=ConditionReason.CREATING,
                        message="Resource does not exist in the external system yet",
                    )
                )

        except IdentityUndetermined as e:
            result.error = e
            resource.status.set_condition(
                Condition(
                    type=ConditionType.READY,
                    status=False,
                    reason=ConditionReason.IDENTITY_UNDETERMINED,
                    message=str(e),
                )
            )
        except (RawTreeError, SensitiveExtractionError) as e:
            result.error = e
            resource.status.set_condition(
                Condition(
                    type=ConditionType.READY,
                    status=False,
                    reason=ConditionReason.RECONCILE_ERROR,
                    message=f"Cannot process observation: {e}",
                )
            )

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _late_initialize(
        self,
        resource: ManagedResource,
        registered: RegisteredResource,
        raw: dict[str, Any],
        result: ObserveResult,
    ) -> None:
        merged = registered.late_init.merge(resource.spec.for_provider, raw)
        result.late_initialized = merged.initialized
        result.skipped_fields = [mismatch.path for mismatch in merged.skipped]
        if merged.changed:
            resource.spec.for_provider = merged.spec

    def _update_status(
        self,
        resource: ManagedResource,
        registered: RegisteredResource,
        raw: dict[str, Any],
        result: ObserveResult,
    ) -> None:
        split = registered.sensitive.partition(raw)
        result.connection = split.connection
        data = registered.observation_index.from_raw(split.visible)
        resource.status.at_provider = self._validate_status(
            registered.config.observation_model, data, result
        )

    def _validate_status(
        self,
        model: type[BaseModel],
        data: dict[str, Any],
        result: ObserveResult,
    ) -> Any:
        """Validate status data, dropping top-level fields that do not fit."""
        for _ in range(MAX_STATUS_VALIDATION_PASSES):
            try:
                return model.model_validate(data)
            except ValidationError as e:
                invalid = {str(error["loc"][0]) for error in e.errors() if error["loc"]}
                if not invalid:
                    break
                logger.warning(
                    "Dropping observed status fields that do not match the schema",
                    extra={"resource": result.name, "fields": sorted(invalid)},
                )
                result.skipped_fields.extend(f"status.{name}" for name in sorted(invalid))
                data = {k: v for k, v in data.items() if k not in invalid}
        return model()

    async def prepare_apply(
        self,
        resource: ManagedResource,
        resource_type: str,
        lookup_fn: LookupFn,
        selector_fn: SelectorFn | None = None,
        timeout_seconds: float | None = None,
    ) -> ApplyResult:
        """Build the argument map to submit to the external tool.

        Args:
            resource: Typed managed resource.
            resource_type: External resource type name.
            lookup_fn: Async lookup of referenced resources.
            selector_fn: Optional async label-selector resolution.
            timeout_seconds: Caller deadline for reference resolution, defaults
                to the registry lookup timeout.

        Returns:
            ApplyResult. When not ready, arguments are empty and the
            resource must not be submitted in this cycle.
        """
        registered = self._registry.get(resource_type)
        result = ApplyResult(resource_type=resource_type, name=resource.name)

        result.identity_initialized = registered.identity.initialize(resource)
        identity = resource.get_external_name()
        result.external_name = identity

        spec = resource.spec.for_provider
        arguments = registered.identity.strip_omitted(
            registered.parameters_index.to_raw(spec)
        )

        resolution = await registered.references.resolve(
            spec,
            lookup_fn,
            selector_fn,
            timeout_seconds=timeout_seconds,
        )
        if not resolution.ready:
            result.missing_references = list(resolution.missing)
            try:
                resolution.raise_if_not_ready()
            except ReferenceNotReady as e:
                result.error = e
            self._set_synced(resource, False, ConditionReason.REFERENCES_NOT_READY, str(result.error))
            logger.info(
                "Apply blocked on references",
                extra={
                    "resource_type": resource_type,
                    "resource": resource.name,
                    "missing": result.missing_references,
                    "timed_out": resolution.timed_out,
                },
            )
            return result

        arguments = apply_overrides(arguments, resolution.overrides, registered.parameters_index)
        arguments = registered.identity.encode(identity, arguments)

        if identity:
            try:
                result.import_id = registered.identity.import_id(identity, arguments)
            except IdentityUndetermined as e:
                result.error = e
                self._set_synced(resource, False, ConditionReason.IDENTITY_UNDETERMINED, str(e))
                return result

        result.arguments = arguments
        self._set_synced(resource, True, ConditionReason.RECONCILE_SUCCESS, "")
        return result

    def _set_synced(
        self,
        resource: ManagedResource,
        status: bool,
        reason: ConditionReason,
        message: str,
    ) -> None:
        resource.status.set_condition(
            Condition(type=ConditionType.SYNCED, status=status, reason=reason, message=message)
        )

    def _log_result(self, result: ObserveResult) -> None:
        """Log observation result with structured data."""
        log_data = {
            "resource_type": result.resource_type,
            "resource": result.name,
            "external_name": result.external_name,
            "identity_changed": result.identity_changed,
            "late_initialized": len(result.late_initialized),
            "skipped_fields": result.skipped_fields,
            "connection_keys": sorted(result.connection),
            "duration_seconds": result.duration_seconds,
        }

        if result.success:
            logger.info("Observation processed", extra=log_data)
        else:
            log_data["error"] = str(result.error)
            logger.error("Observation failed", extra=log_data)
