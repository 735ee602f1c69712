"""Resource references and records held by the resource store."""

from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict


class ResourceKind(str, Enum):
    IDENTITY_RECORD = "LdapUser"
    NAMESPACE = "Namespace"
    CONFIG_MAP = "ConfigMap"
    POD = "Pod"


class ResourceRef(BaseModel):
    """Address of a single resource. Cluster-scoped kinds have no namespace."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str
    namespace: Optional[str] = None

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind.value} {self.namespace}/{self.name}"
        return f"{self.kind.value} {self.name}"


class Resource(BaseModel):
    """A resource as stored: identity plus kind-specific content."""

    kind: ResourceKind
    name: str
    namespace: Optional[str] = None
    labels: Dict[str, str] = {}
    spec: dict = {}                         # ConfigMap data, Pod spec, LdapUser spec
    status: dict = {}

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(kind=self.kind, name=self.name, namespace=self.namespace)


class ChangeType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class ChangeEvent(BaseModel):
    """Notification that an identity record was created, updated or deleted."""

    type: ChangeType
    key: str
