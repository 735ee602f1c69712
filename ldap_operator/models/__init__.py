"""LDAP Operator data models."""

from ldap_operator.models.config import (
    ControllerConfig,
    DirectoryConfig,
    OperatorSettings,
    RegistryConfig,
)
from ldap_operator.models.identity import (
    BundleState,
    DirectorySnapshot,
    IdentityRecord,
    identity_ref,
)
from ldap_operator.models.reconcile import (
    ProvisionResult,
    ReconcilePhase,
    ReconcileResult,
)
from ldap_operator.models.resources import (
    ChangeEvent,
    ChangeType,
    Resource,
    ResourceKind,
    ResourceRef,
)
from ldap_operator.models.sync import ItemFailure, MembershipDiff, SyncReport

__all__ = [
    "BundleState",
    "ChangeEvent",
    "ChangeType",
    "ControllerConfig",
    "DirectoryConfig",
    "DirectorySnapshot",
    "IdentityRecord",
    "ItemFailure",
    "MembershipDiff",
    "OperatorSettings",
    "ProvisionResult",
    "ReconcilePhase",
    "ReconcileResult",
    "RegistryConfig",
    "Resource",
    "ResourceKind",
    "ResourceRef",
    "SyncReport",
    "identity_ref",
]
