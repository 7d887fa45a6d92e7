"""Canonical field paths and the schema path index.

A canonical field path addresses one field across both the typed resource
tree and the raw attribute tree:

    storage_profile.size      nested object field
    delegation[].name         every element of a list field
    rule[0].port              one concrete element

Typed paths use the Python attribute names of the resource models. Each
attribute also knows its raw key (the attribute name unless overridden with
``Field(json_schema_extra={"tf": "..."})``), so the same path can be
translated and resolved against the raw tree.

The SchemaIndex is built once per model class from its static shape. Every
canonical path that a registration mentions is checked against the index,
so a typo in a configuration is a startup failure rather than a silent
no-op at reconcile time.
"""

from __future__ import annotations

import functools
import re
import types
import typing
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, TypeAdapter

from .config import ConfigurationError
from .models import Reference, Selector
from .rawtree import ListNode, MapNode, Node, Scalar

_SEGMENT_PATTERN = re.compile(r"^(?P<name>[^.\[\]]+)(?P<suffix>(\[\d*\])*)$")
_SUFFIX_PATTERN = re.compile(r"\[(\d*)\]")


# =============================================================================
# Field paths
# =============================================================================


@dataclass(frozen=True)
class Key:
    """Named field segment."""

    name: str


@dataclass(frozen=True)
class Each:
    """Repetition marker: applies to every element of a list."""


@dataclass(frozen=True)
class Index:
    """Concrete list position."""

    position: int


Segment = Union[Key, Each, Index]


@dataclass(frozen=True)
class FieldPath:
    """Ordered sequence of path segments."""

    segments: tuple[Segment, ...] = ()

    @classmethod
    def parse(cls, text: str) -> FieldPath:
        """Parse the canonical string form.

        Raises:
            ValueError: If the text is empty or malformed.
        """
        if not text or not text.strip():
            raise ValueError("Field path cannot be empty")

        segments: list[Segment] = []
        for part in text.strip().split("."):
            match = _SEGMENT_PATTERN.match(part)
            if match is None:
                raise ValueError(f"Malformed field path segment '{part}' in '{text}'")
            segments.append(Key(match.group("name")))
            for position in _SUFFIX_PATTERN.findall(match.group("suffix")):
                segments.append(Index(int(position)) if position else Each())
        return cls(tuple(segments))

    def child(self, name: str) -> FieldPath:
        return FieldPath((*self.segments, Key(name)))

    def each(self) -> FieldPath:
        return FieldPath((*self.segments, Each()))

    def index(self, position: int) -> FieldPath:
        return FieldPath((*self.segments, Index(position)))

    def wildcard(self) -> FieldPath:
        """Replace concrete indices with repetition markers."""
        return FieldPath(
            tuple(Each() if isinstance(s, Index) else s for s in self.segments)
        )

    def keys(self) -> tuple[str, ...]:
        """Named segments only, in order."""
        return tuple(s.name for s in self.segments if isinstance(s, Key))

    @property
    def has_repetition(self) -> bool:
        return any(isinstance(s, Each) for s in self.segments)

    @property
    def is_root(self) -> bool:
        return not self.segments

    def flatten(self, separator: str = ".") -> str:
        """Render as a flat key: list positions become numeric segments."""
        parts: list[str] = []
        for segment in self.segments:
            match segment:
                case Key(name=name):
                    parts.append(name)
                case Index(position=position):
                    parts.append(str(position))
                case Each():
                    parts.append("*")
        return separator.join(parts)

    def __str__(self) -> str:
        text = ""
        for segment in self.segments:
            match segment:
                case Key(name=name):
                    text = f"{text}.{name}" if text else name
                case Each():
                    text += "[]"
                case Index(position=position):
                    text += f"[{position}]"
        return text


ROOT = FieldPath()


# =============================================================================
# Raw tree resolution
# =============================================================================


def resolve(tree: Node, path: FieldPath) -> Node | None:
    """Resolve a path against a raw attribute tree.

    Resolution is partial: missing keys, out-of-range positions, shape
    mismatches and null leaves all yield None.

    Raises:
        ValueError: If the path contains a repetition marker, which cannot
            name a single location. Use expand() instead.
    """
    if path.has_repetition:
        raise ValueError(f"Path '{path}' has a repetition marker; use expand()")

    node: Node | None = tree
    for segment in path.segments:
        node = _step(node, segment)
        if node is None:
            return None

    if isinstance(node, Scalar) and node.is_null:
        return None
    return node


def _step(node: Node | None, segment: Segment) -> Node | None:
    match (node, segment):
        case (MapNode() as mapping, Key(name=name)):
            return mapping.get(name)
        case (ListNode(items=items), Index(position=position)):
            return items[position] if position < len(items) else None
        case _:
            return None


def expand(tree: Node, path: FieldPath) -> list[tuple[FieldPath, Node]]:
    """Resolve a path element-wise over every repetition marker.

    Returns:
        (concrete path, node) pairs in document order. Absent or null
        locations are omitted.
    """
    results: list[tuple[FieldPath, Node]] = []
    _expand(tree, path.segments, ROOT, results)
    return results


def _expand(
    node: Node,
    remaining: tuple[Segment, ...],
    concrete: FieldPath,
    results: list[tuple[FieldPath, Node]],
) -> None:
    if not remaining:
        if not (isinstance(node, Scalar) and node.is_null):
            results.append((concrete, node))
        return

    segment, rest = remaining[0], remaining[1:]
    match (node, segment):
        case (ListNode(items=items), Each()):
            for position, item in enumerate(items):
                _expand(item, rest, concrete.index(position), results)
        case (MapNode() as mapping, Key(name=name)):
            child = mapping.get(name)
            if child is not None:
                _expand(child, rest, concrete.child(name), results)
        case (ListNode(items=items), Index(position=position)):
            if position < len(items):
                _expand(items[position], rest, concrete.index(position), results)
        case _:
            return


# =============================================================================
# Schema index
# =============================================================================


class FieldKind(str, Enum):
    """Shape of a typed field as seen by the merge algorithms."""

    SCALAR = "scalar"  # str, int, float, bool, enums
    OBJECT = "object"  # nested model
    OBJECT_LIST = "object_list"  # list of nested models
    COLLECTION = "collection"  # list/dict of scalars, treated as one leaf


@dataclass(frozen=True)
class FieldAccessor:
    """Pre-computed access information for one typed field.

    Attributes:
        path: Canonical typed path (attribute names).
        raw_path: Same location expressed in raw keys.
        attribute: Python attribute name on the owning model.
        raw_key: Key of the field in the raw attribute tree.
        kind: Shape class of the field.
        model: Nested model class for OBJECT and OBJECT_LIST fields.
        adapter: Coercion adapter for SCALAR and COLLECTION fields.
        sensitive: Whether the schema declares the field sensitive.
    """

    path: FieldPath
    raw_path: FieldPath
    attribute: str
    raw_key: str
    kind: FieldKind
    model: type[BaseModel] | None = None
    adapter: TypeAdapter[Any] | None = field(default=None, compare=False, repr=False)
    sensitive: bool = False

    @property
    def is_reference(self) -> bool:
        """Reference and selector accessors are not external arguments."""
        return self.model is not None and issubclass(self.model, (Reference, Selector))

    def coerce(self, value: Any) -> Any:
        """Validate and coerce a plain value into the field's type.

        Raises:
            pydantic.ValidationError: If the value does not fit the type.
        """
        if self.adapter is None:
            raise TypeError(f"Field '{self.path}' of kind {self.kind.value} has no adapter")
        return self.adapter.validate_python(value)

    def dump(self, value: Any) -> Any:
        """Dump a typed value into its JSON-compatible raw form."""
        if self.adapter is None:
            raise TypeError(f"Field '{self.path}' of kind {self.kind.value} has no adapter")
        return self.adapter.dump_python(value, mode="json")


@dataclass(frozen=True)
class Location:
    """Settable location of one concrete field in a typed tree."""

    path: FieldPath
    parent: BaseModel
    accessor: FieldAccessor

    def get(self) -> Any:
        return getattr(self.parent, self.accessor.attribute)

    def set(self, value: Any) -> None:
        setattr(self.parent, self.accessor.attribute, value)


class SchemaIndex:
    """Path index over the static shape of a pydantic model class."""

    def __init__(self, model: type[BaseModel]) -> None:
        self._model = model
        self._fields: dict[FieldPath, FieldAccessor] = {}
        self._children: dict[FieldPath, list[FieldAccessor]] = {}
        self._build(model, ROOT, ROOT, (model,))
        self._by_raw_path = {a.raw_path: a for a in self._fields.values()}

    @classmethod
    def for_model(cls, model: type[BaseModel]) -> SchemaIndex:
        """Return the cached index for a model class."""
        return _index_for(model)

    @property
    def model(self) -> type[BaseModel]:
        return self._model

    def _build(
        self,
        model: type[BaseModel],
        prefix: FieldPath,
        raw_prefix: FieldPath,
        seen: tuple[type[BaseModel], ...],
    ) -> None:
        children: list[FieldAccessor] = []
        for attribute, info in model.model_fields.items():
            extra = info.json_schema_extra if isinstance(info.json_schema_extra, dict) else {}
            raw_key = str(extra.get("tf", attribute))
            kind, nested, inner = _classify(info.annotation)

            accessor = FieldAccessor(
                path=prefix.child(attribute),
                raw_path=raw_prefix.child(raw_key),
                attribute=attribute,
                raw_key=raw_key,
                kind=kind,
                model=nested,
                adapter=_adapter(inner) if kind in (FieldKind.SCALAR, FieldKind.COLLECTION) else None,
                sensitive=bool(extra.get("sensitive", False)),
            )
            self._fields[accessor.path] = accessor
            children.append(accessor)

            if nested is None:
                continue
            if nested in seen:
                raise ConfigurationError(
                    f"Recursive model {nested.__name__} at '{accessor.path}' cannot be indexed"
                )
            if kind == FieldKind.OBJECT:
                self._build(nested, accessor.path, accessor.raw_path, (*seen, nested))
            else:
                self._build(
                    nested, accessor.path.each(), accessor.raw_path.each(), (*seen, nested)
                )

        self._children[prefix] = children

    def get(self, path: FieldPath | str) -> FieldAccessor | None:
        """Look up a field by canonical path. Concrete indices are accepted."""
        if isinstance(path, str):
            try:
                path = FieldPath.parse(path)
            except ValueError:
                return None
        return self._fields.get(path.wildcard())

    def require(self, path: FieldPath | str) -> FieldAccessor:
        """Look up a field, failing with ConfigurationError when unknown."""
        accessor = self.get(path)
        if accessor is None:
            raise ConfigurationError(
                f"Field path '{path}' does not exist in {self._model.__name__}"
            )
        return accessor

    def canonicalize(self, text: str) -> FieldPath:
        """Turn a user-written path into its canonical form.

        Repetition markers may be omitted: "delegation.name" and
        "delegation[].name" both canonicalize to "delegation[].name" when
        delegation is a list of objects.

        Raises:
            ConfigurationError: If the path is malformed or unknown.
        """
        try:
            written = FieldPath.parse(text)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        canonical = ROOT
        for segment in written.segments:
            if isinstance(segment, Key):
                canonical = canonical.child(segment.name)
                accessor = self._fields.get(canonical)
                if accessor is None:
                    raise ConfigurationError(
                        f"Field path '{text}' does not exist in {self._model.__name__}"
                    )
                if accessor.kind == FieldKind.OBJECT_LIST:
                    canonical = canonical.each()
            elif canonical.segments and isinstance(canonical.segments[-1], Each):
                continue
            else:
                raise ConfigurationError(
                    f"Field path '{text}' repeats a field that is not a list of objects"
                )

        # A trailing marker on an object list names the list field itself
        if canonical.segments and isinstance(canonical.segments[-1], Each):
            canonical = FieldPath(canonical.segments[:-1])
        return canonical

    def children(self, prefix: FieldPath = ROOT) -> list[FieldAccessor]:
        """Direct fields of the model at prefix (use path.each() for lists)."""
        return list(self._children.get(prefix.wildcard(), []))

    def fields(self) -> list[FieldAccessor]:
        return list(self._fields.values())

    def sensitive_paths(self) -> list[FieldPath]:
        """Raw paths of every field flagged sensitive in the schema."""
        return [a.raw_path for a in self._fields.values() if a.sensitive]

    def covers_raw_path(self, path: FieldPath) -> bool:
        """Whether a raw path names a field or lies inside a collection field."""
        prefix = ROOT
        for segment in path.wildcard().segments:
            prefix = FieldPath((*prefix.segments, segment))
            accessor = self._by_raw_path.get(prefix)
            if accessor is not None and accessor.kind == FieldKind.COLLECTION:
                return True
        return prefix in self._by_raw_path

    def to_raw_path(self, path: FieldPath) -> FieldPath:
        """Translate a typed path into raw keys, keeping list positions."""
        translated = ROOT
        typed = ROOT
        for segment in path.segments:
            if isinstance(segment, Key):
                typed = typed.child(segment.name)
                accessor = self.require(typed)
                translated = translated.child(accessor.raw_key)
            else:
                typed = FieldPath((*typed.segments, segment))
                translated = FieldPath((*translated.segments, segment))
        return translated

    def to_raw(self, instance: BaseModel, prefix: FieldPath = ROOT) -> dict[str, Any]:
        """Dump a typed tree into a raw argument map keyed by raw keys.

        Unset fields and reference accessors are left out.
        """
        raw: dict[str, Any] = {}
        for accessor in self.children(prefix):
            value = getattr(instance, accessor.attribute)
            if value is None or accessor.is_reference:
                continue
            match accessor.kind:
                case FieldKind.SCALAR | FieldKind.COLLECTION:
                    raw[accessor.raw_key] = accessor.dump(value)
                case FieldKind.OBJECT:
                    raw[accessor.raw_key] = self.to_raw(value, accessor.path)
                case FieldKind.OBJECT_LIST:
                    raw[accessor.raw_key] = [
                        self.to_raw(item, accessor.path.each()) for item in value if item is not None
                    ]
        return raw

    def from_raw(self, raw: Any, prefix: FieldPath = ROOT) -> dict[str, Any]:
        """Rename raw keys to attribute names so the model can validate them.

        Keys unknown to the schema are dropped. Values are not coerced here.
        """
        if not isinstance(raw, dict):
            return {}
        renamed: dict[str, Any] = {}
        for accessor in self.children(prefix):
            if accessor.raw_key not in raw:
                continue
            value = raw[accessor.raw_key]
            match accessor.kind:
                case FieldKind.OBJECT:
                    if isinstance(value, list) and len(value) == 1:
                        value = value[0]
                    if isinstance(value, dict):
                        value = self.from_raw(value, accessor.path)
                case FieldKind.OBJECT_LIST:
                    if isinstance(value, list):
                        value = [
                            self.from_raw(item, accessor.path.each()) if isinstance(item, dict) else item
                            for item in value
                        ]
            renamed[accessor.attribute] = value
        return renamed

    def locate(self, instance: BaseModel, path: FieldPath) -> Iterator[Location]:
        """Yield settable locations for a path in a typed tree.

        Repetition markers expand over the list elements present in the
        instance. Unset intermediate objects end the walk for that branch.
        """
        accessor = self.require(path)
        parent_path = FieldPath(path.segments[:-1])
        for concrete, parent in self._parents(instance, parent_path.segments, ROOT):
            yield Location(concrete.child(accessor.attribute), parent, accessor)

    def _parents(
        self,
        node: Any,
        remaining: tuple[Segment, ...],
        concrete: FieldPath,
    ) -> Iterator[tuple[FieldPath, BaseModel]]:
        if node is None:
            return
        if not remaining:
            if isinstance(node, BaseModel):
                yield concrete, node
            return

        segment, rest = remaining[0], remaining[1:]
        match segment:
            case Key(name=name):
                yield from self._parents(getattr(node, name, None), rest, concrete.child(name))
            case Each():
                if isinstance(node, list):
                    for position, item in enumerate(node):
                        yield from self._parents(item, rest, concrete.index(position))
            case Index(position=position):
                if isinstance(node, list) and position < len(node):
                    yield from self._parents(node[position], rest, concrete.index(position))


@functools.cache
def _index_for(model: type[BaseModel]) -> SchemaIndex:
    return SchemaIndex(model)


# Observed scalars are untyped; a numeric value for a string field is coerced
_SCALAR_CONFIG = ConfigDict(coerce_numbers_to_str=True)


def _adapter(inner: Any) -> TypeAdapter[Any]:
    return TypeAdapter(inner, config=_SCALAR_CONFIG)


def _classify(annotation: Any) -> tuple[FieldKind, type[BaseModel] | None, Any]:
    """Classify a field annotation, unwrapping Optional."""
    inner = _strip_optional(annotation)

    if _is_model(inner):
        return FieldKind.OBJECT, inner, inner

    origin = typing.get_origin(inner)
    if origin in (list, tuple):
        args = typing.get_args(inner)
        if args and _is_model(args[0]):
            return FieldKind.OBJECT_LIST, args[0], inner
        return FieldKind.COLLECTION, None, inner
    if origin in (dict, set, frozenset):
        return FieldKind.COLLECTION, None, inner

    return FieldKind.SCALAR, None, inner


def _strip_optional(annotation: Any) -> Any:
    origin = typing.get_origin(annotation)
    if origin is Union or origin is types.UnionType:
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _is_model(value: Any) -> bool:
    return isinstance(value, type) and issubclass(value, BaseModel)
