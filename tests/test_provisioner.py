"""Tests for the Resource Bundle Provisioner."""

import pytest

from ldap_operator.errors import ResourceNotFound, ResourceStoreUnavailable
from ldap_operator.models.resources import Resource, ResourceKind, ResourceRef
from ldap_operator.provisioner.bundle import ResourceBundleProvisioner
from ldap_operator.registry.store import InMemoryResourceRegistry


def _bundle_refs(key: str):
    return [
        ResourceRef(kind=ResourceKind.NAMESPACE, name=key),
        ResourceRef(kind=ResourceKind.CONFIG_MAP, name=f"{key}-config", namespace=key),
        ResourceRef(kind=ResourceKind.POD, name=f"{key}-pod", namespace=key),
    ]


def _bundle_count(registry: InMemoryResourceRegistry) -> int:
    return sum(
        len(registry.list(kind))
        for kind in (ResourceKind.NAMESPACE, ResourceKind.CONFIG_MAP, ResourceKind.POD)
    )


class TestEnsure:
    def test_creates_members_in_order(self, registry, provisioner):
        result = provisioner.ensure("alice")

        assert result.created == ["namespace", "config", "workload"]
        assert result.unchanged == []
        for ref in _bundle_refs("alice"):
            assert registry.exists(ref)

    def test_members_are_derived_from_key(self, registry, provisioner):
        provisioner.ensure("alice")

        config_map = registry.get(_bundle_refs("alice")[1])
        pod = registry.get(_bundle_refs("alice")[2])

        assert config_map.spec == {"example.config": "value"}
        assert config_map.labels["ldap.gopkg.blog/username"] == "alice"
        assert pod.spec["containers"][0]["image"] == "busybox"
        assert pod.spec["containers"][0]["command"][0] == "sh"

    def test_ensure_twice_yields_one_bundle(self, registry, provisioner):
        provisioner.ensure("alice")
        second = provisioner.ensure("alice")

        assert second.created == []
        assert second.unchanged == ["namespace", "config", "workload"]
        assert _bundle_count(registry) == 3

    def test_resumes_after_interrupted_ensure(self, registry, provisioner):
        """Container and config exist from an interrupted call; only the workload is missing."""
        namespace, config_map, _ = provisioner.bundle("dave")
        registry.create(namespace)
        registry.create(config_map)

        result = provisioner.ensure("dave")

        assert result.created == ["workload"]
        assert result.unchanged == ["namespace", "config"]
        assert _bundle_count(registry) == 3

    def test_missing_scope_is_retryable(self):
        class ScopeVanished(InMemoryResourceRegistry):
            def create(self, resource):
                if resource.kind == ResourceKind.POD:
                    raise ResourceNotFound(ResourceRef(kind=ResourceKind.NAMESPACE, name="alice"))
                return super().create(resource)

        provisioner = ResourceBundleProvisioner(ScopeVanished())

        with pytest.raises(ResourceStoreUnavailable):
            provisioner.ensure("alice")

    def test_registered_member_is_created_last(self, registry, provisioner):
        provisioner.register_member(
            "quota",
            lambda key: Resource(kind=ResourceKind.CONFIG_MAP, name=f"{key}-quota", namespace=key),
        )

        result = provisioner.ensure("alice")

        assert result.created == ["namespace", "config", "workload", "quota"]
        assert provisioner.member_names[-1] == "quota"


class TestTeardown:
    def test_teardown_without_bundle_is_noop(self, registry, provisioner):
        result = provisioner.teardown("ghost")

        assert result.deleted == []
        assert result.changed is False

    def test_explicit_teardown_when_store_does_not_cascade(self, registry, provisioner):
        provisioner.ensure("alice")

        result = provisioner.teardown("alice")

        assert result.deleted == ["workload", "config", "namespace"]
        assert _bundle_count(registry) == 0

    def test_cascading_store_deletes_only_container(self):
        registry = InMemoryResourceRegistry(cascade=True)
        provisioner = ResourceBundleProvisioner(registry)
        provisioner.ensure("alice")

        result = provisioner.teardown("alice")

        assert result.deleted == ["namespace"]
        assert _bundle_count(registry) == 0

    def test_teardown_resumes_after_partial_delete(self, registry, provisioner):
        provisioner.ensure("alice")
        registry.delete(_bundle_refs("alice")[2])

        result = provisioner.teardown("alice")

        assert result.deleted == ["config", "namespace"]
        assert result.unchanged == ["workload"]

    def test_other_bundles_untouched(self, registry, provisioner):
        provisioner.ensure("alice")
        provisioner.ensure("bob")

        provisioner.teardown("alice")

        for ref in _bundle_refs("bob"):
            assert registry.exists(ref)
