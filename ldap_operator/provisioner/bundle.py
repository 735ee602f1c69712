"""
Resource Bundle Provisioner — creates and tears down the resources derived
from one identity key.

A bundle is an ordered list of members: the scoping Namespace, then a
ConfigMap and a Pod inside it. Every member is named from the key alone, so
the bundle can be re-derived at any time.

Behavioral Contract:
- ensure() creates members in order; a member that already exists counts as
  success, so a call interrupted half-way can simply be repeated.
- teardown() deletes members in reverse order; a member that is already gone
  counts as success. When the store cascades namespace deletion only the
  Namespace itself is deleted.
- No state is held between calls.
"""

import logging
from typing import Callable, Dict, List, Tuple

from ldap_operator.errors import (
    ResourceConflict,
    ResourceNotFound,
    ResourceStoreUnavailable,
)
from ldap_operator.models.identity import MANAGED_BY, MANAGED_BY_LABEL, USERNAME_LABEL
from ldap_operator.models.reconcile import ProvisionResult
from ldap_operator.models.resources import Resource, ResourceKind
from ldap_operator.registry.store import ResourceRegistry

logger = logging.getLogger(__name__)

MemberBuilder = Callable[[str], Resource]

DEFAULT_CONFIG_DATA = {"example.config": "value"}
DEFAULT_WORKLOAD_COMMAND = ["sh", "-c", "echo Hello, Kubernetes! && sleep 3600"]


def namespace_name(key: str) -> str:
    return key


def config_map_name(key: str) -> str:
    return f"{key}-config"


def pod_name(key: str) -> str:
    return f"{key}-pod"


def bundle_labels(key: str) -> Dict[str, str]:
    return {MANAGED_BY_LABEL: MANAGED_BY, USERNAME_LABEL: key}


class ResourceBundleProvisioner:
    """Drives the bundle for a single key towards present or absent."""

    def __init__(self, registry: ResourceRegistry, workload_image: str = "busybox"):
        self.registry = registry
        self.workload_image = workload_image
        self._members: List[Tuple[str, MemberBuilder]] = []
        self._register_default_members()

    def _register_default_members(self) -> None:
        """The scoping container must come first; the others live inside it."""
        self._members.append(("namespace", self._build_namespace))
        self._members.append(("config", self._build_config_map))
        self._members.append(("workload", self._build_pod))

    def register_member(self, name: str, builder: MemberBuilder) -> None:
        """Append a member to the bundle. It is created after the defaults."""
        self._members.append((name, builder))

    @property
    def member_names(self) -> List[str]:
        return [name for name, _ in self._members]

    def bundle(self, key: str) -> List[Resource]:
        """The full set of resources derived from a key, in creation order."""
        return [builder(key) for _, builder in self._members]

    def ensure(self, key: str) -> ProvisionResult:
        """Create every missing bundle member for key."""
        result = ProvisionResult(key=key)

        for name, builder in self._members:
            resource = builder(key)
            try:
                self.registry.create(resource)
            except ResourceConflict:
                result.unchanged.append(name)
                continue
            except ResourceNotFound as e:
                # The scope vanished underneath us (e.g. a concurrent teardown).
                raise ResourceStoreUnavailable(
                    f"Cannot create {resource.ref}: {e}"
                ) from e
            result.created.append(name)
            logger.info("Created %s for %s", resource.ref, key)

        return result

    def teardown(self, key: str) -> ProvisionResult:
        """Delete the bundle for key. A missing bundle is a no-op."""
        result = ProvisionResult(key=key)

        members = self._members
        if self.registry.cascades_scoped_deletes:
            members = members[:1]

        for name, builder in reversed(members):
            ref = builder(key).ref
            try:
                self.registry.delete(ref)
            except ResourceNotFound:
                result.unchanged.append(name)
                continue
            result.deleted.append(name)
            logger.info("Deleted %s for %s", ref, key)

        return result

    # --- Member builders ---

    def _build_namespace(self, key: str) -> Resource:
        return Resource(
            kind=ResourceKind.NAMESPACE,
            name=namespace_name(key),
            labels=bundle_labels(key),
        )

    def _build_config_map(self, key: str) -> Resource:
        return Resource(
            kind=ResourceKind.CONFIG_MAP,
            name=config_map_name(key),
            namespace=namespace_name(key),
            labels=bundle_labels(key),
            spec=dict(DEFAULT_CONFIG_DATA),
        )

    def _build_pod(self, key: str) -> Resource:
        return Resource(
            kind=ResourceKind.POD,
            name=pod_name(key),
            namespace=namespace_name(key),
            labels=bundle_labels(key),
            spec={
                "containers": [
                    {
                        "name": "busybox",
                        "image": self.workload_image,
                        "command": list(DEFAULT_WORKLOAD_COMMAND),
                    }
                ],
            },
        )
