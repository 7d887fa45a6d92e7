"""Tests for reference resolution."""

from __future__ import annotations

import pytest

from bridge.config import ConfigurationError
from bridge.models import EXTERNAL_NAME_ANNOTATION, ReferencePolicy, ResolutionPolicy
from bridge.paths import SchemaIndex
from bridge.references import (
    ExternalNameExtractor,
    FieldPathExtractor,
    ReferenceConfig,
    ReferenceNotReady,
    ReferenceResolution,
    ReferenceResolver,
    ReferenceTarget,
    apply_overrides,
)
from resource_mock import (
    AccessKeyParameters,
    DBInstanceParameters,
    MockObjectStore,
    SecurityGroupAttachment,
    User,
    make_meta,
)


def access_key_resolver(**kwargs) -> ReferenceResolver:
    return ReferenceResolver(
        SchemaIndex.for_model(AccessKeyParameters),
        {"user": ReferenceConfig(target="User", **kwargs)},
    )


def make_user(name: str, external_name: str | None = None, **labels: str) -> User:
    meta = make_meta(name)
    meta.labels.update(labels)
    user = User(metadata=meta)
    if external_name:
        user.set_external_name(external_name)
    return user


class TestReferenceTarget:
    """Tests for ReferenceTarget parsing."""

    def test_parse(self) -> None:
        """Test bare and package-qualified kinds."""
        assert ReferenceTarget.parse("User") == ReferenceTarget(kind="User")
        assert ReferenceTarget.parse("iam.User") == ReferenceTarget(kind="User", package="iam")
        assert ReferenceTarget.parse("iam.User").qualified_kind == "iam.User"

    def test_parse_empty(self) -> None:
        """Test an empty kind is rejected."""
        with pytest.raises(ConfigurationError):
            ReferenceTarget.parse("iam.")

    def test_config_parses_string_target(self) -> None:
        """Test ReferenceConfig accepts a string target."""
        config = ReferenceConfig(target="iam.User")
        assert config.kind == "iam.User"
        assert isinstance(config.extractor, ExternalNameExtractor)


class TestExtractors:
    """Tests for reference extractors."""

    def test_external_name(self) -> None:
        """Test the default extractor reads the identity annotation."""
        assert ExternalNameExtractor().extract(make_user("alice", "AIDA123")) == "AIDA123"
        assert ExternalNameExtractor().extract(make_user("alice")) is None

    def test_field_path(self) -> None:
        """Test extracting a status field."""
        user = make_user("alice")
        user.status.at_provider.arn = "arn:aws:iam::1:user/alice"
        extractor = FieldPathExtractor("status.at_provider.arn")
        assert extractor.extract(user) == "arn:aws:iam::1:user/alice"

    def test_field_path_missing(self) -> None:
        """Test an unset field extracts nothing."""
        assert FieldPathExtractor("status.at_provider.arn").extract(make_user("alice")) is None

    def test_field_path_validation(self) -> None:
        """Test malformed extractor paths are rejected."""
        with pytest.raises(ConfigurationError):
            FieldPathExtractor("status..arn")
        with pytest.raises(ConfigurationError, match="repeat"):
            FieldPathExtractor("status.conditions[].reason")


class TestResolverConfiguration:
    """Tests for resolver construction."""

    def test_fields(self) -> None:
        """Test configured fields are canonicalized."""
        resolver = ReferenceResolver(
            SchemaIndex.for_model(DBInstanceParameters),
            {
                "subnet_id": ReferenceConfig(target="Subnet"),
                "security_group.group_id": ReferenceConfig(target="SecurityGroup"),
            },
        )
        assert resolver.fields == ["security_group[].group_id", "subnet_id"]

    def test_unknown_field(self) -> None:
        """Test references on unknown fields fail at construction."""
        with pytest.raises(ConfigurationError, match="does not exist"):
            ReferenceResolver(
                SchemaIndex.for_model(AccessKeyParameters),
                {"group": ReferenceConfig(target="Group")},
            )

    def test_missing_ref_accessor(self) -> None:
        """Test the reference accessor must exist."""
        with pytest.raises(ConfigurationError, match="does not exist"):
            ReferenceResolver(
                SchemaIndex.for_model(AccessKeyParameters),
                {"status": ReferenceConfig(target="Status")},
            )

    def test_ref_accessor_must_be_reference(self) -> None:
        """Test a custom accessor name must point at a Reference field."""
        with pytest.raises(ConfigurationError, match="must be typed Reference"):
            ReferenceResolver(
                SchemaIndex.for_model(AccessKeyParameters),
                {"user": ReferenceConfig(target="User", ref_field_name="status")},
            )

    def test_non_scalar_field(self) -> None:
        """Test references can only feed scalar arguments."""
        with pytest.raises(ConfigurationError, match="scalar"):
            ReferenceResolver(
                SchemaIndex.for_model(DBInstanceParameters),
                {"storage_profile": ReferenceConfig(target="Profile")},
            )


class TestResolve:
    """Tests for ReferenceResolver.resolve."""

    @pytest.mark.asyncio
    async def test_not_found(self, store: MockObjectStore) -> None:
        """Test a missing referent blocks the resource."""
        spec = AccessKeyParameters(user_ref={"name": "alice"})
        resolution = await access_key_resolver().resolve(spec, store.lookup)

        assert resolution.ready is False
        assert resolution.missing == ["user"]
        assert "user" not in resolution.overrides
        assert "not found" in resolution.errors["user"]

    @pytest.mark.asyncio
    async def test_resolves_external_name(self, store: MockObjectStore) -> None:
        """Test the referent's identity is staged by default."""
        store.add("User", make_user("alice", "AIDA123"))
        spec = AccessKeyParameters(user_ref={"name": "alice"})
        resolution = await access_key_resolver().resolve(spec, store.lookup)

        assert resolution.ready is True
        assert resolution.overrides == {"user": "AIDA123"}
        assert store.lookups == [("User", "alice")]
        # The stored spec is untouched
        assert spec.user is None

    @pytest.mark.asyncio
    async def test_referent_without_value(self, store: MockObjectStore) -> None:
        """Test a referent that has no identity yet is not ready."""
        store.add("User", make_user("alice"))
        spec = AccessKeyParameters(user_ref={"name": "alice"})
        resolution = await access_key_resolver().resolve(spec, store.lookup)

        assert resolution.ready is False
        assert "no value" in resolution.errors["user"]

    @pytest.mark.asyncio
    async def test_no_reference_set(self, store: MockObjectStore) -> None:
        """Test a literal value without reference needs no lookup."""
        spec = AccessKeyParameters(user="literal")
        resolution = await access_key_resolver().resolve(spec, store.lookup)

        assert resolution.ready is True
        assert resolution.overrides == {}
        assert store.lookups == []

    @pytest.mark.asyncio
    async def test_optional_config(self, store: MockObjectStore) -> None:
        """Test optional references never block."""
        spec = AccessKeyParameters(user_ref={"name": "alice"})
        resolution = await access_key_resolver(required=False).resolve(spec, store.lookup)

        assert resolution.ready is True
        assert resolution.missing == []
        assert "user" in resolution.errors

    @pytest.mark.asyncio
    async def test_policy_overrides_config(self, store: MockObjectStore) -> None:
        """Test the reference's own policy takes precedence."""
        spec = AccessKeyParameters(
            user_ref={
                "name": "alice",
                "policy": ReferencePolicy(resolution=ResolutionPolicy.OPTIONAL),
            }
        )
        resolution = await access_key_resolver().resolve(spec, store.lookup)
        assert resolution.ready is True

    @pytest.mark.asyncio
    async def test_selector(self, store: MockObjectStore) -> None:
        """Test label selectors resolve to a referent name."""
        store.add("User", make_user("alice", "AIDA-A", team="a"))
        store.add("User", make_user("bob", "AIDA-B", team="b"))
        spec = AccessKeyParameters(user_selector={"matchLabels": {"team": "b"}})

        resolution = await access_key_resolver().resolve(spec, store.lookup, store.select)
        assert resolution.overrides == {"user": "AIDA-B"}

    @pytest.mark.asyncio
    async def test_selector_without_resolution(self, store: MockObjectStore) -> None:
        """Test a selector without a selector function is not ready."""
        spec = AccessKeyParameters(user_selector={"matchLabels": {"team": "b"}})
        resolution = await access_key_resolver().resolve(spec, store.lookup)
        assert resolution.ready is False

    @pytest.mark.asyncio
    async def test_selector_no_match(self, store: MockObjectStore) -> None:
        """Test a selector matching nothing is not ready."""
        spec = AccessKeyParameters(user_selector={"matchLabels": {"team": "z"}})
        resolution = await access_key_resolver().resolve(spec, store.lookup, store.select)
        assert resolution.ready is False
        assert "no resource matches" in resolution.errors["user"]

    @pytest.mark.asyncio
    async def test_lookup_error_fails_closed(self) -> None:
        """Test lookup exceptions report the field missing."""
        store = MockObjectStore(fail_with=ConnectionError("store unavailable"))
        spec = AccessKeyParameters(user_ref={"name": "alice"})
        resolution = await access_key_resolver().resolve(spec, store.lookup)

        assert resolution.ready is False
        assert resolution.missing == ["user"]
        assert "store unavailable" in resolution.errors["user"]

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        """Test an expired deadline stages nothing."""
        store = MockObjectStore(lookup_delay_seconds=1.0)
        store.add("User", make_user("alice", "AIDA123"))
        spec = AccessKeyParameters(user_ref={"name": "alice"})

        resolution = await access_key_resolver().resolve(
            spec, store.lookup, timeout_seconds=0.05
        )
        assert resolution.timed_out is True
        assert resolution.ready is False
        assert resolution.overrides == {}
        assert resolution.missing == ["user"]

    @pytest.mark.asyncio
    async def test_timeout_reports_referenced_fields_only(self) -> None:
        """Test a timeout lists only the references set on the spec."""
        store = MockObjectStore(lookup_delay_seconds=1.0)
        resolver = ReferenceResolver(
            SchemaIndex.for_model(DBInstanceParameters),
            {
                "subnet_id": ReferenceConfig(target="Subnet"),
                "security_group[].group_id": ReferenceConfig(target="SecurityGroup"),
            },
        )
        spec = DBInstanceParameters(
            subnet_id_ref={"name": "subnet-a"},
            security_group=[SecurityGroupAttachment(group_id="sg-literal")],
        )

        resolution = await resolver.resolve(spec, store.lookup, timeout_seconds=0.05)
        assert resolution.timed_out is True
        assert resolution.missing == ["subnet_id"]
        assert resolution.errors == {"subnet_id": "timed out"}

    @pytest.mark.asyncio
    async def test_nothing_referenced_skips_deadline(self) -> None:
        """Test a spec without references resolves without lookups."""
        store = MockObjectStore(lookup_delay_seconds=1.0)
        spec = AccessKeyParameters(user="alice")

        resolution = await access_key_resolver().resolve(spec, store.lookup, timeout_seconds=0.05)
        assert resolution.ready is True
        assert resolution.timed_out is False
        assert store.lookups == []

    @pytest.mark.asyncio
    async def test_nested_list_references(self, store: MockObjectStore) -> None:
        """Test references inside list elements resolve per element."""
        store.add("SecurityGroup", make_user("web", "sg-web"))
        resolver = ReferenceResolver(
            SchemaIndex.for_model(DBInstanceParameters),
            {"security_group[].group_id": ReferenceConfig(target="SecurityGroup")},
        )
        spec = DBInstanceParameters(
            security_group=[
                SecurityGroupAttachment(group_id="sg-literal"),
                SecurityGroupAttachment(group_id_ref={"name": "web"}),
                SecurityGroupAttachment(group_id_ref={"name": "db"}),
            ]
        )
        resolution = await resolver.resolve(spec, store.lookup)

        assert resolution.overrides == {"security_group[1].group_id": "sg-web"}
        assert resolution.missing == ["security_group[2].group_id"]
        assert resolution.ready is False

    @pytest.mark.asyncio
    async def test_partial_success(self, store: MockObjectStore) -> None:
        """Test one unresolved reference does not stop the others."""
        store.add("Subnet", make_user("subnet-a", "subnet-123"))
        resolver = ReferenceResolver(
            SchemaIndex.for_model(DBInstanceParameters),
            {
                "subnet_id": ReferenceConfig(target="Subnet"),
                "security_group[].group_id": ReferenceConfig(target="SecurityGroup"),
            },
        )
        spec = DBInstanceParameters(
            subnet_id_ref={"name": "subnet-a"},
            security_group=[SecurityGroupAttachment(group_id_ref={"name": "missing"})],
        )
        resolution = await resolver.resolve(spec, store.lookup)

        assert resolution.overrides == {"subnet_id": "subnet-123"}
        assert resolution.missing == ["security_group[0].group_id"]


class TestReferenceResolution:
    """Tests for ReferenceResolution."""

    def test_raise_if_not_ready(self) -> None:
        """Test not-ready resolutions raise ReferenceNotReady."""
        ReferenceResolution().raise_if_not_ready()

        with pytest.raises(ReferenceNotReady) as exc_info:
            ReferenceResolution(ready=False, missing=["user"]).raise_if_not_ready()
        assert exc_info.value.missing == ["user"]

        with pytest.raises(ReferenceNotReady, match="timed out"):
            ReferenceResolution(ready=False, missing=["user"], timed_out=True).raise_if_not_ready()


class TestApplyOverrides:
    """Tests for apply_overrides."""

    def test_top_level(self) -> None:
        """Test overrides are written into a copy of the arguments."""
        index = SchemaIndex.for_model(AccessKeyParameters)
        args = {"status": "Active"}
        updated = apply_overrides(args, {"user": "AIDA123"}, index)
        assert updated == {"status": "Active", "user": "AIDA123"}
        assert args == {"status": "Active"}

    def test_list_element(self) -> None:
        """Test overrides land in the matching list element."""
        index = SchemaIndex.for_model(DBInstanceParameters)
        args = {"security_group": [{"priority": 1}, {"priority": 2}]}
        updated = apply_overrides(args, {"security_group[1].group_id": "sg-2"}, index)
        assert updated == {"security_group": [{"priority": 1}, {"priority": 2, "group_id": "sg-2"}]}

    def test_missing_list_is_not_created(self) -> None:
        """Test an override without a matching element is dropped."""
        index = SchemaIndex.for_model(DBInstanceParameters)
        assert apply_overrides({}, {"security_group[0].group_id": "sg-1"}, index) == {}


def test_external_name_annotation_used_by_default_extractor() -> None:
    """Test the extractor reads the well-known annotation key."""
    user = make_user("alice")
    user.metadata.annotations[EXTERNAL_NAME_ANNOTATION] = "AIDA"
    assert ExternalNameExtractor().extract(user) == "AIDA"
