"""
Resource Registry — the cluster-state store holding identity records and
the resources derived from them.

Updated by: Bulk sync + Identity reconciler
Queried by: Bulk sync + Identity reconciler + HTTP API

Behavioral Contract:
- create raises ResourceConflict when the resource already exists.
- get, delete and update_status raise ResourceNotFound when it does not.
- Every other failure is raised as ResourceStoreUnavailable.
- update_status merges into the existing status; a None value removes the
  field (JSON merge-patch semantics).
- Subscribers are notified of every create, status update and delete of an
  identity record.
"""

import logging
import threading
from copy import deepcopy
from typing import Callable, Dict, List, Optional, Protocol

from ldap_operator.errors import ResourceConflict, ResourceNotFound
from ldap_operator.models.resources import (
    ChangeEvent,
    ChangeType,
    Resource,
    ResourceKind,
    ResourceRef,
)

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], None]


class ResourceRegistry(Protocol):
    """Interface every resource store implements."""

    @property
    def cascades_scoped_deletes(self) -> bool:
        """Whether deleting a Namespace also deletes everything inside it."""
        ...

    def list(self, kind: ResourceKind, namespace: Optional[str] = None) -> List[Resource]:
        ...

    def get(self, ref: ResourceRef) -> Resource:
        ...

    def create(self, resource: Resource) -> Resource:
        ...

    def delete(self, ref: ResourceRef) -> None:
        ...

    def update_status(self, ref: ResourceRef, status: dict) -> Resource:
        ...

    def subscribe(self, callback: ChangeCallback) -> None:
        ...

    def close(self) -> None:
        """Stop notifications and release connections."""
        ...


class InMemoryResourceRegistry:
    """
    In-memory resource store for tests and local runs.

    Deletes do not cascade unless cascade=True, so teardown paths that must
    delete scoped members explicitly can be exercised.
    """

    def __init__(self, cascade: bool = False):
        self._resources: Dict[ResourceRef, Resource] = {}
        self._subscribers: List[ChangeCallback] = []
        self._lock = threading.Lock()
        self._cascade = cascade

    @property
    def cascades_scoped_deletes(self) -> bool:
        return self._cascade

    def list(self, kind: ResourceKind, namespace: Optional[str] = None) -> List[Resource]:
        """All resources of a kind, optionally restricted to one namespace."""
        with self._lock:
            return [
                deepcopy(r) for ref, r in sorted(
                    self._resources.items(), key=lambda item: str(item[0])
                )
                if ref.kind == kind and (namespace is None or ref.namespace == namespace)
            ]

    def get(self, ref: ResourceRef) -> Resource:
        with self._lock:
            resource = self._resources.get(ref)
            if resource is None:
                raise ResourceNotFound(ref)
            return deepcopy(resource)

    def create(self, resource: Resource) -> Resource:
        ref = resource.ref
        with self._lock:
            if ref in self._resources:
                raise ResourceConflict(ref)
            self._resources[ref] = deepcopy(resource)
        self._notify(ref, ChangeType.ADDED)
        return deepcopy(resource)

    def delete(self, ref: ResourceRef) -> None:
        with self._lock:
            if ref not in self._resources:
                raise ResourceNotFound(ref)
            del self._resources[ref]
            if self._cascade and ref.kind == ResourceKind.NAMESPACE:
                scoped = [r for r in self._resources if r.namespace == ref.name]
                for r in scoped:
                    del self._resources[r]
            else:
                scoped = []
        self._notify(ref, ChangeType.DELETED)
        for r in scoped:
            self._notify(r, ChangeType.DELETED)

    def update_status(self, ref: ResourceRef, status: dict) -> Resource:
        """Merge into the status block of an existing resource."""
        with self._lock:
            resource = self._resources.get(ref)
            if resource is None:
                raise ResourceNotFound(ref)
            merged = dict(resource.status or {})
            for field, value in status.items():
                if value is None:
                    merged.pop(field, None)
                else:
                    merged[field] = deepcopy(value)
            resource.status = merged
            updated = deepcopy(resource)
        self._notify(ref, ChangeType.MODIFIED)
        return updated

    def subscribe(self, callback: ChangeCallback) -> None:
        """Register a callback for identity record changes."""
        self._subscribers.append(callback)

    def close(self) -> None:
        self._subscribers.clear()

    def names(self, kind: ResourceKind, namespace: Optional[str] = None) -> List[str]:
        """Names of all resources of a kind. Convenience for inspection."""
        return [r.name for r in self.list(kind, namespace)]

    def exists(self, ref: ResourceRef) -> bool:
        with self._lock:
            return ref in self._resources

    def _notify(self, ref: ResourceRef, change: ChangeType) -> None:
        if ref.kind != ResourceKind.IDENTITY_RECORD:
            return
        event = ChangeEvent(type=change, key=ref.name)
        for callback in list(self._subscribers):
            callback(event)
