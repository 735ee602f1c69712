"""Identity records — the tracked side of directory membership."""

from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional

from pydantic import BaseModel

from ldap_operator.models.resources import Resource, ResourceKind, ResourceRef

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "ldap-operator"
USERNAME_LABEL = "ldap.gopkg.blog/username"


class BundleState(str, Enum):
    ABSENT = "Absent"
    PROVISIONING = "Provisioning"
    PROVISIONED = "Provisioned"
    DECOMMISSIONING = "Decommissioning"


def identity_ref(key: str, namespace: str) -> ResourceRef:
    """Records are named after their identity key."""
    return ResourceRef(kind=ResourceKind.IDENTITY_RECORD, name=key, namespace=namespace)


class IdentityRecord(BaseModel):
    """One tracked directory member."""

    key: str
    namespace: str
    bundle_state: BundleState = BundleState.ABSENT
    transitioned_at: Optional[datetime] = None      # Last bundle_state change
    message: Optional[str] = None                   # Last reconcile error, cleared on success

    @property
    def ref(self) -> ResourceRef:
        return identity_ref(self.key, self.namespace)

    def to_resource(self) -> Resource:
        return Resource(
            kind=ResourceKind.IDENTITY_RECORD,
            name=self.key,
            namespace=self.namespace,
            labels={MANAGED_BY_LABEL: MANAGED_BY},
            spec={"username": self.key},
            status=self.status_body(),
        )

    def status_body(self) -> dict:
        body = {"bundleState": self.bundle_state.value}
        if self.transitioned_at is not None:
            body["transitionedAt"] = self.transitioned_at.isoformat()
        if self.message is not None:
            body["message"] = self.message
        return body

    @classmethod
    def from_resource(cls, resource: Resource) -> "IdentityRecord":
        status = resource.status or {}
        transitioned = status.get("transitionedAt")
        return cls(
            key=resource.name,
            namespace=resource.namespace or "",
            bundle_state=BundleState(status.get("bundleState", BundleState.ABSENT.value)),
            transitioned_at=datetime.fromisoformat(transitioned) if transitioned else None,
            message=status.get("message"),
        )


class DirectorySnapshot(BaseModel):
    """Identity keys observed in the directory at one point in time."""

    keys: FrozenSet[str] = frozenset()
    taken_at: datetime
