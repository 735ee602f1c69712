"""Tests for the Bulk Sync Engine."""

import random

import pytest

from ldap_operator.errors import (
    DirectoryUnavailable,
    PartialBatchFailure,
    ResourceStoreUnavailable,
)
from ldap_operator.history.store import SyncHistoryStore
from ldap_operator.models.identity import BundleState, IdentityRecord, identity_ref
from ldap_operator.models.resources import ChangeType, ResourceKind, ResourceRef
from ldap_operator.provisioner.bundle import ResourceBundleProvisioner
from ldap_operator.registry.store import InMemoryResourceRegistry
from ldap_operator.sync.engine import BulkSyncEngine, diff_membership

NAMESPACE = "ldap-space"


def _track(registry, *keys: str) -> None:
    for key in keys:
        registry.create(IdentityRecord(key=key, namespace=NAMESPACE).to_resource())


def _tracked(registry) -> set:
    return set(registry.names(ResourceKind.IDENTITY_RECORD, NAMESPACE))


def _state(registry, key: str) -> BundleState:
    return IdentityRecord.from_resource(
        registry.get(identity_ref(key, NAMESPACE))
    ).bundle_state


class TestDiffMembership:
    def test_symmetric_difference(self):
        diff = diff_membership({"alice", "bob"}, {"bob", "carol"})
        assert diff.to_create == ["alice"]
        assert diff.to_delete == ["carol"]

    def test_identical_sets(self):
        assert diff_membership({"a", "b"}, {"b", "a"}).empty

    def test_disjoint_outputs(self):
        rng = random.Random(7)
        population = [f"u{i}" for i in range(40)]
        for _ in range(25):
            a = set(rng.sample(population, rng.randint(0, 40)))
            b = set(rng.sample(population, rng.randint(0, 40)))
            diff = diff_membership(a, b)
            assert not set(diff.to_create) & set(diff.to_delete)
            assert (b | set(diff.to_create)) - set(diff.to_delete) == a


class TestBulkSync:
    def test_scenario_create_and_delete(self, stub_directory, registry, provisioner, engine):
        stub_directory.keys = {"alice", "bob"}
        _track(registry, "bob", "carol")
        provisioner.ensure("bob")
        provisioner.ensure("carol")
        events = []
        registry.subscribe(events.append)

        report = engine.run()

        assert report.created == ["alice"]
        assert report.deleted == ["carol"]
        assert report.failures == []
        assert _tracked(registry) == {"alice", "bob"}
        # bob's bundle is untouched; carol's is gone
        assert registry.exists(ResourceRef(kind=ResourceKind.POD, name="bob-pod", namespace="bob"))
        assert not registry.exists(ResourceRef(kind=ResourceKind.NAMESPACE, name="carol"))
        assert [(e.type, e.key) for e in events] == [
            (ChangeType.ADDED, "alice"),
            (ChangeType.MODIFIED, "carol"),
            (ChangeType.DELETED, "carol"),
        ]

    def test_empty_directory_deletes_everything(self, registry, engine):
        _track(registry, "a", "b", "c", "d")

        report = engine.run()

        assert report.created == []
        assert report.deleted == ["a", "b", "c", "d"]
        assert _tracked(registry) == set()

    def test_converged_registry_is_untouched(self, stub_directory, registry, engine):
        stub_directory.keys = {"a", "b"}
        _track(registry, "a", "b")
        events = []
        registry.subscribe(events.append)

        report = engine.run()

        assert report.created == [] and report.deleted == []
        assert events == []

    def test_registry_matches_directory_after_one_pass(self, stub_directory, directory):
        rng = random.Random(11)
        population = [f"user{i}" for i in range(30)]
        for _ in range(10):
            registry = InMemoryResourceRegistry()
            engine = BulkSyncEngine(registry, directory, NAMESPACE)
            a = set(rng.sample(population, rng.randint(0, 30)))
            b = set(rng.sample(population, rng.randint(0, 30)))
            stub_directory.keys = a
            _track(registry, *b)

            engine.run()

            assert _tracked(registry) == a

    def test_new_records_start_absent(self, stub_directory, registry, engine):
        stub_directory.keys = {"alice"}
        engine.run()

        record = IdentityRecord.from_resource(registry.get(identity_ref("alice", NAMESPACE)))
        assert record.bundle_state == BundleState.ABSENT

    def test_counts_and_timestamps(self, stub_directory, registry, engine):
        stub_directory.keys = {"a", "b", "c"}
        _track(registry, "c", "d")

        report = engine.run()

        assert report.directory_count == 3
        assert report.tracked_count == 2
        assert report.snapshot_taken_at is not None
        assert report.finished_at >= report.started_at


class TestAbsorbedOutcomes:
    def test_concurrent_create_is_absorbed(self, stub_directory, directory):
        class StaleList(InMemoryResourceRegistry):
            """Lists nothing, as if the record appeared right after the list call."""
            def list(self, kind, namespace=None):
                return []

        registry = StaleList()
        _track(registry, "alice")
        stub_directory.keys = {"alice"}

        report = BulkSyncEngine(registry, directory, NAMESPACE).run()

        assert report.absorbed == ["alice"]
        assert report.created == []
        assert report.succeeded

    def test_concurrent_delete_is_absorbed(self, directory):
        class Phantom(InMemoryResourceRegistry):
            def list(self, kind, namespace=None):
                return [IdentityRecord(key="carol", namespace=NAMESPACE).to_resource()]

        report = BulkSyncEngine(Phantom(), directory, NAMESPACE).run()

        assert report.absorbed == ["carol"]
        assert report.deleted == []
        assert report.succeeded


class TestFailureIsolation:
    def test_one_failure_does_not_block_siblings(self, stub_directory, directory):
        class BrokenFor(InMemoryResourceRegistry):
            def create(self, resource):
                if resource.name == "bob":
                    raise ResourceStoreUnavailable("admission webhook timed out")
                return super().create(resource)

        registry = BrokenFor()
        _track(registry, "zed")
        stub_directory.keys = {"alice", "bob", "carol"}

        report = BulkSyncEngine(registry, directory, NAMESPACE).run()

        assert report.created == ["alice", "carol"]
        assert report.deleted == ["zed"]
        assert report.failed_keys == ["bob"]
        assert report.failures[0].operation == "create"
        assert report.failures[0].retryable is True
        assert "webhook" in report.failures[0].reason

        with pytest.raises(PartialBatchFailure) as exc_info:
            report.raise_for_failures()
        assert exc_info.value.report is report

    def test_failed_teardown_keeps_record(self, directory):
        class UndeletableNamespace(InMemoryResourceRegistry):
            def delete(self, ref):
                if ref.kind == ResourceKind.NAMESPACE and ref.name == "carol":
                    raise ResourceStoreUnavailable("namespace finalizer stuck")
                return super().delete(ref)

        registry = UndeletableNamespace()
        provisioner = ResourceBundleProvisioner(registry)
        _track(registry, "carol", "dave")
        provisioner.ensure("carol")

        report = BulkSyncEngine(registry, directory, NAMESPACE, provisioner=provisioner).run()

        assert report.deleted == ["dave"]
        assert report.failed_keys == ["carol"]
        assert _tracked(registry) == {"carol"}
        assert _state(registry, "carol") == BundleState.DECOMMISSIONING

    def test_failed_record_delete_never_reads_provisioned(self, directory):
        class UndeletableRecord(InMemoryResourceRegistry):
            def delete(self, ref):
                if ref.kind == ResourceKind.IDENTITY_RECORD:
                    raise ResourceStoreUnavailable("apiserver unavailable")
                return super().delete(ref)

        registry = UndeletableRecord()
        provisioner = ResourceBundleProvisioner(registry)
        registry.create(IdentityRecord(
            key="carol", namespace=NAMESPACE, bundle_state=BundleState.PROVISIONED,
        ).to_resource())
        provisioner.ensure("carol")

        report = BulkSyncEngine(registry, directory, NAMESPACE, provisioner=provisioner).run()

        assert report.failed_keys == ["carol"]
        assert not registry.exists(ResourceRef(kind=ResourceKind.NAMESPACE, name="carol"))
        assert _state(registry, "carol") == BundleState.DECOMMISSIONING

    def test_unexpected_error_is_reported(self, stub_directory, directory):
        class Buggy(InMemoryResourceRegistry):
            def create(self, resource):
                raise KeyError("spec")

        stub_directory.keys = {"alice"}
        report = BulkSyncEngine(Buggy(), directory, NAMESPACE).run()

        assert report.failed_keys == ["alice"]
        assert report.failures[0].retryable is False

    def test_directory_down_mutates_nothing(self, stub_directory, registry, engine):
        _track(registry, "alice")
        stub_directory.reachable = False

        with pytest.raises(DirectoryUnavailable):
            engine.run()
        assert _tracked(registry) == {"alice"}


class TestHistory:
    def test_reports_are_recorded(self, stub_directory, registry, directory):
        history = SyncHistoryStore(db_path=":memory:")
        engine = BulkSyncEngine(registry, directory, NAMESPACE, history=history)
        stub_directory.keys = {"alice"}

        first = engine.run()
        second = engine.run()

        assert history.count() == 2
        assert history.get_by_id(first.id).created == ["alice"]
        assert history.latest().id == second.id
