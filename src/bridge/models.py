"""Pydantic models for typed managed resources.

These models provide:
1. The typed desired-state (spec.for_provider) and observed-state
   (status.at_provider) trees the engine fills and reads
2. Reference and selector fields used to declare dependencies
3. Status conditions that surface reconciliation failures to users

Resource-specific parameter and observation classes are produced by the
schema generator (out of scope here) as subclasses of ResourceParameters and
ResourceObservation. Every optional field defaults to None, which the engine
treats as "unset".
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Well-known annotation carrying the external identity as an opaque string
EXTERNAL_NAME_ANNOTATION = "bridge.io/external-name"


# =============================================================================
# Metadata
# =============================================================================


class ObjectMeta(BaseModel):
    """Control plane object metadata."""

    model_config = {"extra": "ignore"}

    name: str = Field(min_length=1)
    namespace: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# References
# =============================================================================


class ResolutionPolicy(str, Enum):
    """Whether an unresolvable reference blocks the resource."""

    REQUIRED = "Required"
    OPTIONAL = "Optional"


class ReferencePolicy(BaseModel):
    """Per-reference resolution policy."""

    model_config = {"extra": "ignore"}

    resolution: ResolutionPolicy = ResolutionPolicy.REQUIRED


class Reference(BaseModel):
    """Reference to another managed resource by name."""

    model_config = {"extra": "ignore"}

    name: str = Field(min_length=1)
    policy: ReferencePolicy | None = None


class Selector(BaseModel):
    """Label selector for a referenced managed resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    match_labels: dict[str, str] = Field(default_factory=dict, alias="matchLabels")
    policy: ReferencePolicy | None = None


# =============================================================================
# Conditions
# =============================================================================


class ConditionType(str, Enum):
    """Condition types reported on managed resources."""

    READY = "Ready"
    SYNCED = "Synced"


class ConditionReason(str, Enum):
    """Machine-readable reasons attached to conditions."""

    AVAILABLE = "Available"
    CREATING = "Creating"
    RECONCILE_SUCCESS = "ReconcileSuccess"
    RECONCILE_ERROR = "ReconcileError"
    REFERENCES_NOT_READY = "ReferencesNotReady"
    IDENTITY_UNDETERMINED = "IdentityUndetermined"


class Condition(BaseModel):
    """A single status condition."""

    model_config = {"extra": "ignore"}

    type: ConditionType
    status: bool
    reason: ConditionReason
    message: str = ""
    last_transition_time: datetime = Field(default_factory=lambda: datetime.now(UTC))


# =============================================================================
# Resource trees
# =============================================================================


class ResourceParameters(BaseModel):
    """Base class for generated desired-state parameter models."""

    model_config = {"extra": "ignore", "populate_by_name": True}


class ResourceObservation(BaseModel):
    """Base class for generated observed-state models."""

    model_config = {"extra": "ignore", "populate_by_name": True}


class ResourceSpec(BaseModel):
    """Desired state. Subclasses narrow for_provider."""

    model_config = {"extra": "ignore"}

    for_provider: ResourceParameters = Field(default_factory=ResourceParameters)


class ResourceStatus(BaseModel):
    """Observed state. Subclasses narrow at_provider."""

    model_config = {"extra": "ignore"}

    at_provider: ResourceObservation = Field(default_factory=ResourceObservation)
    conditions: list[Condition] = Field(default_factory=list)

    def get_condition(self, condition_type: ConditionType) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(self, condition: Condition) -> None:
        """Add or replace a condition, keeping the transition time on no-op."""
        existing = self.get_condition(condition.type)
        if existing is None:
            self.conditions.append(condition)
            return
        if existing.status == condition.status and existing.reason == condition.reason:
            existing.message = condition.message
            return
        self.conditions[self.conditions.index(existing)] = condition


class ManagedResource(BaseModel):
    """A typed resource managed through the external provisioning tool."""

    model_config = {"extra": "ignore"}

    metadata: ObjectMeta
    spec: ResourceSpec = Field(default_factory=ResourceSpec)
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    def get_external_name(self) -> str | None:
        """Return the identity annotation, treating empty as absent."""
        value = self.metadata.annotations.get(EXTERNAL_NAME_ANNOTATION)
        return value or None

    def set_external_name(self, value: str) -> None:
        self.metadata.annotations[EXTERNAL_NAME_ANNOTATION] = value

    def to_summary(self) -> dict[str, Any]:
        """Short description for logging."""
        return {
            "kind": type(self).__name__,
            "name": self.metadata.name,
            "external_name": self.get_external_name(),
        }
