"""Late initialization of desired state from observed state.

After every observation the engine fills fields of spec.for_provider that
the user left unset with the values the external system reports. This way a
provider default (an allocated size, a generated endpoint) becomes part of
the desired state and later drift is detected against it.

RULES:
- Only unset (None) fields are filled; a set value always wins
- Ignored paths are skipped together with their whole subtree
- Identity-redundant top-level fields are never filled
- An unset nested object is allocated, filled recursively, and kept only if
  something was filled
- Lists of objects merge element-wise only when the observed list has the
  same length; otherwise a set list is left alone and an unset list is
  built from the observed elements
- Empty observed collections count as "not observed"
- A shape mismatch between observed value and typed field is logged and the
  field is skipped; the rest of the tree still merges

KNOWN LIMITATION:
Two fields that the external system treats as mutually exclusive (e.g.
"storage_size" and "storage_profile.size") can both be filled. The external
system then rejects the apply. The merge cannot detect this; the resource
registration must list one of the fields in its ignored paths.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ValidationError

from .paths import ROOT, FieldAccessor, FieldKind, FieldPath, SchemaIndex
from .rawtree import DEFAULT_MAX_DEPTH, ListNode, MapNode, Node, Scalar, kind_of, parse, to_python

logger = logging.getLogger(__name__)


class MergeTypeMismatch(Exception):
    """Observed value shape disagrees with the typed field.

    Never aborts a merge: the field is skipped and treated as absent.
    """

    def __init__(self, path: FieldPath | str, expected: str, observed: str, detail: str = "") -> None:
        self.path = str(path)
        self.expected = expected
        self.observed = observed
        message = f"Field '{self.path}' expects {expected}, observed {observed}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


@dataclass(frozen=True)
class LateInitConfig:
    """Late-init part of a resource configuration.

    Attributes:
        ignored_fields: Canonical typed paths never filled from observation,
            e.g. "storage_profile.size" or "delegation[].name".
    """

    ignored_fields: frozenset[str] = field(default_factory=frozenset)


@dataclass
class LateInitResult:
    """Outcome of one merge."""

    spec: BaseModel
    initialized: list[str] = field(default_factory=list)
    skipped: list[MergeTypeMismatch] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.initialized)


class LateInitializer:
    """Merges observed attributes into unset fields of a typed spec."""

    def __init__(
        self,
        index: SchemaIndex,
        config: LateInitConfig | None = None,
        omitted_fields: frozenset[str] = frozenset(),
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        """Initialize the merger.

        Args:
            index: Path index of the parameters model.
            config: Late-init configuration.
            omitted_fields: Top-level fields redundant with identity.
            max_depth: Bound on observed tree nesting.

        Raises:
            ConfigurationError: If an ignored path does not exist in the schema.
        """
        self._index = index
        self._config = config or LateInitConfig()
        self._ignored = frozenset(index.canonicalize(p) for p in self._config.ignored_fields)
        self._omitted = frozenset(omitted_fields)
        self._max_depth = max_depth

    @property
    def ignored_paths(self) -> frozenset[FieldPath]:
        return self._ignored

    def merge(self, spec: BaseModel, raw: Any) -> LateInitResult:
        """Fill unset fields of spec from the raw observation.

        The input spec is not mutated; the result carries a merged copy.
        Applying merge again with the same observation changes nothing.

        Args:
            spec: Current desired state (spec.for_provider).
            raw: Observed attributes, plain mapping or raw tree.

        Returns:
            LateInitResult with the merged spec and the filled paths.
        """
        if not isinstance(spec, self._index.model):
            raise TypeError(
                f"Expected {self._index.model.__name__}, got {type(spec).__name__}"
            )

        result = LateInitResult(spec=spec.model_copy(deep=True))
        tree = parse(raw, self._max_depth)
        if not isinstance(tree, MapNode):
            mismatch = MergeTypeMismatch(ROOT, "map", kind_of(tree))
            logger.warning("Observation is not a mapping, nothing merged", extra={"error": str(mismatch)})
            result.skipped.append(mismatch)
            return result

        self._merge_model(result.spec, tree, ROOT, ROOT, result)

        if result.changed:
            logger.info(
                "Late-initialized fields from observation",
                extra={
                    "model": self._index.model.__name__,
                    "fields": result.initialized,
                },
            )
        return result

    def _merge_model(
        self,
        instance: BaseModel,
        raw: MapNode,
        prefix: FieldPath,
        concrete: FieldPath,
        result: LateInitResult,
    ) -> bool:
        """Merge one model level. Returns True if any field was filled."""
        filled = False
        for accessor in self._index.children(prefix):
            if accessor.path in self._ignored or accessor.is_reference:
                continue
            if prefix.is_root and accessor.attribute in self._omitted:
                continue

            observed = raw.get(accessor.raw_key)
            if observed is None or (isinstance(observed, Scalar) and observed.is_null):
                continue

            location = concrete.child(accessor.attribute)
            try:
                if self._merge_field(instance, accessor, observed, location, result):
                    filled = True
            except MergeTypeMismatch as e:
                logger.warning(
                    "Skipping field with mismatched observed shape",
                    extra={
                        "path": e.path,
                        "expected": e.expected,
                        "observed": e.observed,
                    },
                )
                result.skipped.append(e)
        return filled

    def _merge_field(
        self,
        instance: BaseModel,
        accessor: FieldAccessor,
        observed: Node,
        location: FieldPath,
        result: LateInitResult,
    ) -> bool:
        current = getattr(instance, accessor.attribute)

        match accessor.kind:
            case FieldKind.SCALAR | FieldKind.COLLECTION:
                if current is not None:
                    return False
                value = self._coerce_leaf(accessor, observed, location)
                if value is None:
                    return False
                setattr(instance, accessor.attribute, value)
                result.initialized.append(str(location))
                logger.debug("Late-initialized field", extra={"path": str(location)})
                return True

            case FieldKind.OBJECT:
                mapping = self._object_node(accessor, observed, location)
                if mapping is None:
                    return False
                if current is not None:
                    return self._merge_model(current, mapping, accessor.path, location, result)
                candidate = self._new_element(accessor, location)
                if self._merge_model(candidate, mapping, accessor.path, location, result):
                    setattr(instance, accessor.attribute, candidate)
                    return True
                return False

            case FieldKind.OBJECT_LIST:
                return self._merge_list(instance, accessor, current, observed, location, result)

            case _:
                return False

    def _merge_list(
        self,
        instance: BaseModel,
        accessor: FieldAccessor,
        current: list[BaseModel] | None,
        observed: Node,
        location: FieldPath,
        result: LateInitResult,
    ) -> bool:
        if not isinstance(observed, ListNode):
            raise MergeTypeMismatch(location, "list", kind_of(observed))
        items = observed.items
        if not items:
            return False
        for position, item in enumerate(items):
            if not isinstance(item, MapNode):
                raise MergeTypeMismatch(location.index(position), "map", kind_of(item))

        element_prefix = accessor.path.each()

        if current is not None:
            if len(current) != len(items):
                # No 1:1 correspondence; the set list is a leaf
                logger.debug(
                    "List cardinality differs from observation, not merging elements",
                    extra={
                        "path": str(location),
                        "desired": len(current),
                        "observed": len(items),
                    },
                )
                return False
            filled = False
            for position, (element, item) in enumerate(zip(current, items, strict=True)):
                if element is None:
                    continue
                if self._merge_model(element, item, element_prefix, location.index(position), result):
                    filled = True
            return filled

        elements: list[BaseModel] = []
        filled = False
        for position, item in enumerate(items):
            candidate = self._new_element(accessor, location.index(position))
            if self._merge_model(candidate, item, element_prefix, location.index(position), result):
                filled = True
            elements.append(candidate)
        if filled:
            setattr(instance, accessor.attribute, elements)
        return filled

    def _coerce_leaf(self, accessor: FieldAccessor, observed: Node, location: FieldPath) -> Any:
        match (accessor.kind, observed):
            case (FieldKind.SCALAR, Scalar(value=value)):
                pass
            case (FieldKind.COLLECTION, ListNode() | MapNode()):
                if len(observed) == 0:
                    return None
                value = to_python(observed)
            case _:
                expected = "scalar" if accessor.kind == FieldKind.SCALAR else "collection"
                raise MergeTypeMismatch(location, expected, kind_of(observed))

        try:
            return accessor.coerce(value)
        except ValidationError as e:
            raise MergeTypeMismatch(
                location,
                accessor.kind.value,
                kind_of(observed),
                detail=e.errors()[0]["msg"] if e.errors() else str(e),
            ) from e

    def _object_node(self, accessor: FieldAccessor, observed: Node, location: FieldPath) -> MapNode | None:
        match observed:
            case MapNode():
                return observed
            # Blocks are often reported as single-element lists
            case ListNode(items=()):
                return None
            case ListNode(items=(MapNode() as only,)):
                return only
            case _:
                raise MergeTypeMismatch(location, "object", kind_of(observed))

    def _new_element(self, accessor: FieldAccessor, location: FieldPath) -> BaseModel:
        model = accessor.model
        if model is None:
            raise TypeError(f"Field '{accessor.path}' of kind {accessor.kind.value} has no model")
        try:
            return model()
        except ValidationError as e:
            raise MergeTypeMismatch(
                location,
                "object",
                "object",
                detail=f"{model.__name__} has required fields and cannot be allocated",
            ) from e
