"""Shared fixtures: an in-memory directory served over ldap3's Connection API."""

import re

import pytest
from ldap3.core.exceptions import LDAPException, LDAPSocketOpenError
from pydantic import SecretStr

from ldap_operator.directory.client import PAGED_RESULTS_OID, DirectoryClient
from ldap_operator.models.config import DirectoryConfig
from ldap_operator.provisioner.bundle import ResourceBundleProvisioner
from ldap_operator.reconciler.identity import IdentityReconciler
from ldap_operator.registry.store import InMemoryResourceRegistry
from ldap_operator.sync.engine import BulkSyncEngine

NAMESPACE = "ldap-space"

_UID_FILTER = re.compile(r"\(uid=([^)]*)\)")


class StubDirectory:
    """Mutable directory population plus failure switches."""

    def __init__(self, keys=()):
        self.keys = set(keys)
        self.reachable = True
        self.reject_bind = False
        self.fail_search = False
        self.opened = 0
        self.closed = 0
        self.filters = []

    def connection(self) -> "StubConnection":
        return StubConnection(self)


class StubConnection:
    def __init__(self, directory: StubDirectory):
        self.directory = directory
        self.response = None
        self.result = {}
        directory.opened += 1

    def bind(self) -> bool:
        if not self.directory.reachable:
            raise LDAPSocketOpenError("socket connection error")
        if self.directory.reject_bind:
            self.result = {"result": 49, "description": "invalidCredentials"}
            return False
        return True

    def search(self, search_base, search_filter, search_scope=None, attributes=None,
               paged_size=None, paged_cookie=None, size_limit=0):
        self.directory.filters.append(search_filter)
        if self.directory.fail_search:
            raise LDAPException("search failed")

        match = _UID_FILTER.search(search_filter)
        keys = sorted(self.directory.keys)
        if match:
            keys = [k for k in keys if k == match.group(1)]

        start = int(paged_cookie) if paged_cookie else 0
        chunk = keys[start:start + paged_size] if paged_size else keys
        end = start + len(chunk)
        cookie = str(end).encode() if paged_size and end < len(keys) else b""

        self.response = [
            {
                "type": "searchResEntry",
                "dn": f"uid={k},ou=people,dc=example,dc=org",
                "attributes": {"uid": [k]},
            }
            for k in chunk
        ]
        self.result = {
            "result": 0,
            "controls": {PAGED_RESULTS_OID: {"value": {"size": 0, "cookie": cookie}}},
        }
        return True

    def unbind(self) -> bool:
        self.directory.closed += 1
        return True


def make_directory_config(**overrides) -> DirectoryConfig:
    values = dict(
        host="ldap.test",
        port=1389,
        bind_dn="cn=admin,dc=example,dc=org",
        bind_password=SecretStr("admin"),
        search_base="dc=example,dc=org",
    )
    values.update(overrides)
    return DirectoryConfig(**values)


@pytest.fixture
def stub_directory():
    return StubDirectory()


@pytest.fixture
def directory(stub_directory):
    return DirectoryClient(make_directory_config(), connection_factory=stub_directory.connection)


@pytest.fixture
def registry():
    return InMemoryResourceRegistry()


@pytest.fixture
def provisioner(registry):
    return ResourceBundleProvisioner(registry)


@pytest.fixture
def reconciler(registry, directory, provisioner):
    return IdentityReconciler(registry, directory, provisioner, namespace=NAMESPACE)


@pytest.fixture
def engine(registry, directory, provisioner):
    return BulkSyncEngine(registry, directory, namespace=NAMESPACE, provisioner=provisioner)


@pytest.fixture
def make_client(stub_directory):
    """Build a DirectoryClient against the stub with config overrides."""
    def _make(**overrides) -> DirectoryClient:
        return DirectoryClient(
            make_directory_config(**overrides),
            connection_factory=stub_directory.connection,
        )
    return _make
