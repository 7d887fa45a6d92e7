"""Sample resources and an in-memory store for engine tests.

Key Features:
- Typed resources covering nested objects, object lists, raw key
  overrides, sensitive attributes and references
- Registry factory registering every sample resource type
- Async object store with latency and error injection for references

Usage:
    from resource_mock import MockObjectStore, build_registry

    registry = build_registry()
    store = MockObjectStore()
    result = await engine.prepare_apply(resource, "example_access_key", store.lookup)
"""

from .resources import (
    ACCESS_KEY_CONFIG,
    BUCKET_CONFIG,
    DB_INSTANCE_CONFIG,
    USER_CONFIG,
    VPC_CONFIG,
    AccessKey,
    AccessKeyObservation,
    AccessKeyParameters,
    AccessKeySpec,
    Bucket,
    BucketObservation,
    BucketParameters,
    BucketSpec,
    ConnectionKey,
    DBInstance,
    DBInstanceObservation,
    DBInstanceParameters,
    DBInstanceSpec,
    LifecycleRule,
    SecurityGroupAttachment,
    StorageProfile,
    User,
    Versioning,
    VPC,
    VPCObservation,
    VPCParameters,
    VPCSpec,
    access_key_extractor,
    build_registry,
    make_meta,
)
from .store import MockObjectStore

__all__ = [
    "ACCESS_KEY_CONFIG",
    "AccessKey",
    "AccessKeyObservation",
    "AccessKeyParameters",
    "AccessKeySpec",
    "BUCKET_CONFIG",
    "Bucket",
    "BucketObservation",
    "BucketParameters",
    "BucketSpec",
    "ConnectionKey",
    "DB_INSTANCE_CONFIG",
    "DBInstance",
    "DBInstanceObservation",
    "DBInstanceParameters",
    "DBInstanceSpec",
    "LifecycleRule",
    "MockObjectStore",
    "SecurityGroupAttachment",
    "StorageProfile",
    "USER_CONFIG",
    "User",
    "VPC",
    "VPC_CONFIG",
    "VPCObservation",
    "VPCParameters",
    "VPCSpec",
    "Versioning",
    "access_key_extractor",
    "build_registry",
    "make_meta",
]
