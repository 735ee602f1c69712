"""
Kubernetes Resource Registry.

Identity records are LdapUser custom objects; bundle members are a
Namespace, a ConfigMap and a Pod. Kubernetes API errors are translated at
this boundary: 404 → ResourceNotFound, 409 → ResourceConflict, everything
else → ResourceStoreUnavailable.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from ldap_operator.errors import (
    ResourceConflict,
    ResourceNotFound,
    ResourceStoreUnavailable,
)
from ldap_operator.models.config import RegistryConfig
from ldap_operator.models.identity import MANAGED_BY, MANAGED_BY_LABEL
from ldap_operator.models.resources import (
    ChangeEvent,
    ChangeType,
    Resource,
    ResourceKind,
    ResourceRef,
)
from ldap_operator.registry.store import ChangeCallback

logger = logging.getLogger(__name__)

WATCH_RESTART_DELAY_SECONDS = 5


@contextmanager
def translate_api_errors(ref: Any) -> Iterator[None]:
    """Map Kubernetes client errors onto the operator's error taxonomy."""
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise ResourceNotFound(ref) from e
        if e.status == 409:
            raise ResourceConflict(ref) from e
        raise ResourceStoreUnavailable(f"{ref}: {e.status} {e.reason}") from e
    except HTTPError as e:
        raise ResourceStoreUnavailable(f"{ref}: {e}") from e


def load_kube_config(registry_config: RegistryConfig) -> None:
    """In-cluster service account first, kubeconfig as fallback."""
    if registry_config.in_cluster:
        try:
            config.load_incluster_config()
            return
        except config.ConfigException:
            logger.warning("Failed to load in-cluster config, trying local kubeconfig")
    config.load_kube_config(config_file=registry_config.kubeconfig)


class KubernetesResourceRegistry:
    """ResourceRegistry backed by the Kubernetes API."""

    def __init__(
        self,
        registry_config: RegistryConfig,
        api_client: Optional[client.ApiClient] = None,
    ):
        self.config = registry_config
        self.api_client = api_client or client.ApiClient()
        self.core = client.CoreV1Api(self.api_client)
        self.custom = client.CustomObjectsApi(self.api_client)
        self._subscribers: List[ChangeCallback] = []
        self._watch_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @property
    def cascades_scoped_deletes(self) -> bool:
        # Namespace deletion garbage-collects everything inside it.
        return True

    @property
    def _timeout(self) -> int:
        return self.config.request_timeout_seconds

    def _custom_args(self, namespace: Optional[str]) -> dict:
        return {
            "group": self.config.group,
            "version": self.config.version,
            "namespace": namespace or self.config.namespace,
            "plural": self.config.plural,
        }

    # --- Reads ---

    def list(self, kind: ResourceKind, namespace: Optional[str] = None) -> List[Resource]:
        with translate_api_errors(f"list {kind.value}"):
            if kind == ResourceKind.IDENTITY_RECORD:
                result = self.custom.list_namespaced_custom_object(
                    **self._custom_args(namespace), _request_timeout=self._timeout
                )
                return [self._from_custom(obj) for obj in result.get("items", [])]

            selector = f"{MANAGED_BY_LABEL}={MANAGED_BY}"
            if kind == ResourceKind.NAMESPACE:
                items = self.core.list_namespace(
                    label_selector=selector, _request_timeout=self._timeout
                ).items
            elif kind == ResourceKind.CONFIG_MAP:
                items = self._list_scoped(
                    self.core.list_namespaced_config_map,
                    self.core.list_config_map_for_all_namespaces,
                    namespace, selector,
                )
            else:
                items = self._list_scoped(
                    self.core.list_namespaced_pod,
                    self.core.list_pod_for_all_namespaces,
                    namespace, selector,
                )
            return [self._from_core(kind, obj) for obj in items]

    def _list_scoped(self, namespaced, all_namespaces, namespace, selector) -> List[Any]:
        if namespace:
            return namespaced(
                namespace, label_selector=selector, _request_timeout=self._timeout
            ).items
        return all_namespaces(label_selector=selector, _request_timeout=self._timeout).items

    def get(self, ref: ResourceRef) -> Resource:
        with translate_api_errors(ref):
            if ref.kind == ResourceKind.IDENTITY_RECORD:
                obj = self.custom.get_namespaced_custom_object(
                    **self._custom_args(ref.namespace), name=ref.name,
                    _request_timeout=self._timeout,
                )
                return self._from_custom(obj)
            if ref.kind == ResourceKind.NAMESPACE:
                obj = self.core.read_namespace(ref.name, _request_timeout=self._timeout)
            elif ref.kind == ResourceKind.CONFIG_MAP:
                obj = self.core.read_namespaced_config_map(
                    ref.name, ref.namespace, _request_timeout=self._timeout
                )
            else:
                obj = self.core.read_namespaced_pod(
                    ref.name, ref.namespace, _request_timeout=self._timeout
                )
            return self._from_core(ref.kind, obj)

    # --- Writes ---

    def create(self, resource: Resource) -> Resource:
        ref = resource.ref
        body = self._to_body(resource)
        with translate_api_errors(ref):
            if ref.kind == ResourceKind.IDENTITY_RECORD:
                obj = self.custom.create_namespaced_custom_object(
                    **self._custom_args(ref.namespace), body=body,
                    _request_timeout=self._timeout,
                )
                created = self._from_custom(obj)
                if resource.status:
                    created = self.update_status(ref, resource.status)
                return created
            if ref.kind == ResourceKind.NAMESPACE:
                obj = self.core.create_namespace(body, _request_timeout=self._timeout)
            elif ref.kind == ResourceKind.CONFIG_MAP:
                obj = self.core.create_namespaced_config_map(
                    ref.namespace, body, _request_timeout=self._timeout
                )
            else:
                obj = self.core.create_namespaced_pod(
                    ref.namespace, body, _request_timeout=self._timeout
                )
            return self._from_core(ref.kind, obj)

    def delete(self, ref: ResourceRef) -> None:
        with translate_api_errors(ref):
            if ref.kind == ResourceKind.IDENTITY_RECORD:
                self.custom.delete_namespaced_custom_object(
                    **self._custom_args(ref.namespace), name=ref.name,
                    _request_timeout=self._timeout,
                )
            elif ref.kind == ResourceKind.NAMESPACE:
                self.core.delete_namespace(ref.name, _request_timeout=self._timeout)
            elif ref.kind == ResourceKind.CONFIG_MAP:
                self.core.delete_namespaced_config_map(
                    ref.name, ref.namespace, _request_timeout=self._timeout
                )
            else:
                self.core.delete_namespaced_pod(
                    ref.name, ref.namespace, _request_timeout=self._timeout
                )

    def update_status(self, ref: ResourceRef, status: dict) -> Resource:
        if ref.kind != ResourceKind.IDENTITY_RECORD:
            raise ResourceStoreUnavailable(f"{ref}: status is only tracked on identity records")
        with translate_api_errors(ref):
            obj = self.custom.patch_namespaced_custom_object_status(
                **self._custom_args(ref.namespace), name=ref.name,
                body={"status": status}, _request_timeout=self._timeout,
            )
            return self._from_custom(obj)

    # --- Change notifications ---

    def subscribe(self, callback: ChangeCallback) -> None:
        """Register a callback; the first subscription starts the watch thread."""
        self._subscribers.append(callback)
        if self._watch_thread is None:
            self._stop.clear()
            self._watch_thread = threading.Thread(
                target=self._watch_loop, name="ldapuser-watch", daemon=True
            )
            self._watch_thread.start()

    def close(self) -> None:
        self._stop.set()
        self.api_client.close()

    def _watch_loop(self) -> None:
        while not self._stop.is_set():
            w = watch.Watch()
            try:
                for event in w.stream(
                    self.custom.list_namespaced_custom_object,
                    **self._custom_args(None),
                    timeout_seconds=300,
                ):
                    if self._stop.is_set():
                        w.stop()
                        break
                    self._dispatch(event)
            except (ApiException, HTTPError) as e:
                logger.warning(
                    "Watch on %s interrupted: %s; restarting in %ss",
                    self.config.plural, e, WATCH_RESTART_DELAY_SECONDS,
                )
                self._stop.wait(WATCH_RESTART_DELAY_SECONDS)
            except Exception:
                logger.exception(
                    "Watch on %s failed; restarting in %ss",
                    self.config.plural, WATCH_RESTART_DELAY_SECONDS,
                )
                self._stop.wait(WATCH_RESTART_DELAY_SECONDS)

    def _dispatch(self, event: Dict[str, Any]) -> None:
        try:
            change = ChangeType(event.get("type"))
        except ValueError:
            return                          # BOOKMARK / ERROR
        obj = event.get("object") or {}
        name = obj.get("metadata", {}).get("name")
        if not name:
            return
        event = ChangeEvent(type=change, key=name)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("Change subscriber failed on %s %s", change.value, name)

    # --- Serialization ---

    def _to_body(self, resource: Resource) -> dict:
        metadata: Dict[str, Any] = {"name": resource.name, "labels": dict(resource.labels)}
        if resource.namespace and resource.kind != ResourceKind.NAMESPACE:
            metadata["namespace"] = resource.namespace

        if resource.kind == ResourceKind.IDENTITY_RECORD:
            return {
                "apiVersion": f"{self.config.group}/{self.config.version}",
                "kind": resource.kind.value,
                "metadata": metadata,
                "spec": dict(resource.spec),
            }
        body = {"apiVersion": "v1", "kind": resource.kind.value, "metadata": metadata}
        if resource.kind == ResourceKind.CONFIG_MAP:
            body["data"] = dict(resource.spec)
        elif resource.kind == ResourceKind.POD:
            body["spec"] = dict(resource.spec)
        return body

    def _from_custom(self, obj: dict) -> Resource:
        metadata = obj.get("metadata", {})
        return Resource(
            kind=ResourceKind.IDENTITY_RECORD,
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace"),
            labels=metadata.get("labels") or {},
            spec=obj.get("spec") or {},
            status=obj.get("status") or {},
        )

    def _from_core(self, kind: ResourceKind, obj: Any) -> Resource:
        data = self.api_client.sanitize_for_serialization(obj)
        metadata = data.get("metadata", {})
        if kind == ResourceKind.CONFIG_MAP:
            spec = data.get("data") or {}
        else:
            spec = data.get("spec") or {}
        return Resource(
            kind=kind,
            name=metadata.get("name", ""),
            namespace=None if kind == ResourceKind.NAMESPACE else metadata.get("namespace"),
            labels=metadata.get("labels") or {},
            spec=spec,
            status=data.get("status") or {},
        )
