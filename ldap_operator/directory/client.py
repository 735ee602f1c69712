"""
Directory Client — read-only membership queries against LDAP.

Behavioral Contract:
- Every call opens, binds and tears down its own session. Idle sessions are
  not assumed to survive between calls.
- The connection is released on every exit path, including failures.
- Any connect, bind or search failure surfaces as DirectoryUnavailable.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Optional, Set

from ldap3 import NONE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from ldap_operator.errors import DirectoryUnavailable
from ldap_operator.models.config import DirectoryConfig
from ldap_operator.models.identity import DirectorySnapshot

logger = logging.getLogger(__name__)

# Simple Paged Results control (RFC 2696)
PAGED_RESULTS_OID = "1.2.840.113556.1.4.319"


class DirectoryClient:
    """
    Queries the directory for identity keys.

    A custom connection_factory can be supplied to target a different
    transport; it must return an unbound ldap3-compatible Connection.
    """

    def __init__(
        self,
        config: DirectoryConfig,
        connection_factory: Optional[Callable[[], Connection]] = None,
    ):
        self.config = config
        self._connection_factory = connection_factory or self._default_connection

    def _default_connection(self) -> Connection:
        server = Server(
            self.config.host,
            port=self.config.port,
            use_ssl=self.config.use_ssl,
            get_info=NONE,
            connect_timeout=self.config.connect_timeout_seconds,
        )
        return Connection(
            server,
            user=self.config.bind_dn,
            password=self.config.bind_password.get_secret_value(),
            receive_timeout=self.config.receive_timeout_seconds,
            raise_exceptions=True,
        )

    @contextmanager
    def _session(self) -> Iterator[Connection]:
        """Open and bind a connection, always unbinding afterwards."""
        conn = None
        try:
            conn = self._connection_factory()
            if not conn.bind():
                raise DirectoryUnavailable(
                    f"Bind as {self.config.bind_dn} failed: {conn.result}"
                )
            yield conn
        except LDAPException as e:
            raise DirectoryUnavailable(
                f"Directory {self.config.host}:{self.config.port} unavailable: {e}"
            ) from e
        finally:
            if conn is not None:
                try:
                    conn.unbind()
                except LDAPException as e:
                    logger.warning("Failed to unbind directory session: %s", e)

    def fetch_all(self) -> Set[str]:
        """
        All identity keys matching the object-class filter under the search base.
        An empty directory yields an empty set.
        """
        attribute = self.config.key_attribute
        keys: Set[str] = set()

        with self._session() as conn:
            cookie = None
            while True:
                conn.search(
                    self.config.search_base,
                    self.config.object_class_filter,
                    search_scope=SUBTREE,
                    attributes=[attribute],
                    paged_size=self.config.page_size,
                    paged_cookie=cookie,
                )
                for entry in conn.response or []:
                    if entry.get("type") != "searchResEntry":
                        continue
                    key = self._key_of(entry)
                    if key is None:
                        logger.warning(
                            "Skipping entry %s without %s", entry.get("dn"), attribute
                        )
                        continue
                    keys.add(key)

                cookie = self._next_cookie(conn)
                if not cookie:
                    break

        logger.debug("Directory returned %d identities", len(keys))
        return keys

    def fetch_one(self, key: str) -> bool:
        """Whether exactly this key is a member of the directory population."""
        search_filter = "(&{}({}={}))".format(
            self.config.object_class_filter,
            self.config.key_attribute,
            escape_filter_chars(key),
        )

        with self._session() as conn:
            conn.search(
                self.config.search_base,
                search_filter,
                search_scope=SUBTREE,
                attributes=[self.config.key_attribute],
                size_limit=1,
            )
            return any(
                entry.get("type") == "searchResEntry" for entry in conn.response or []
            )

    def snapshot(self) -> DirectorySnapshot:
        """fetch_all, stamped with the time the query was issued."""
        taken_at = datetime.utcnow()
        return DirectorySnapshot(keys=frozenset(self.fetch_all()), taken_at=taken_at)

    def _key_of(self, entry: dict) -> Optional[str]:
        value = entry.get("attributes", {}).get(self.config.key_attribute)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        if value in (None, ""):
            return None
        return str(value)

    @staticmethod
    def _next_cookie(conn: Connection) -> Optional[bytes]:
        controls = (conn.result or {}).get("controls") or {}
        paged = controls.get(PAGED_RESULTS_OID) or {}
        return (paged.get("value") or {}).get("cookie") or None
