"""
Bulk Sync Engine — full-population reconciliation.

Diffs the complete directory snapshot against every tracked identity record
and applies the difference: records for new keys are created, records (and
bundles) for vanished keys are removed.

Behavioral Contract:
- The diff is computed with set arithmetic; there is no "update" category.
- Creates are applied before deletes.
- Creating a record that exists, or deleting one that is gone, is success.
- A record is marked Decommissioning before its bundle is torn down, so a
  failed delete never leaves it reading Provisioned.
- Each key is attempted independently. A failure is recorded in the report
  and the pass moves on to the next key.
- If the snapshot or the tracked set cannot be read, nothing is mutated and
  the retryable error propagates.
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Set
from uuid import uuid4

from ldap_operator.directory.client import DirectoryClient
from ldap_operator.errors import (
    OperatorError,
    ResourceConflict,
    ResourceNotFound,
    RetryableError,
)
from ldap_operator.history.store import SyncHistoryStore
from ldap_operator.models.identity import BundleState, IdentityRecord, identity_ref
from ldap_operator.models.resources import ResourceKind
from ldap_operator.models.sync import ItemFailure, MembershipDiff, SyncReport
from ldap_operator.provisioner.bundle import ResourceBundleProvisioner
from ldap_operator.registry.store import ResourceRegistry

logger = logging.getLogger(__name__)


def diff_membership(snapshot: Set[str], tracked: Set[str]) -> MembershipDiff:
    """Keys to create (in snapshot only) and to delete (tracked only)."""
    return MembershipDiff(
        to_create=sorted(snapshot - tracked),
        to_delete=sorted(tracked - snapshot),
    )


class BulkSyncEngine:
    """Applies one directory snapshot to the registry per call to run()."""

    def __init__(
        self,
        registry: ResourceRegistry,
        directory: DirectoryClient,
        namespace: str,
        provisioner: Optional[ResourceBundleProvisioner] = None,
        history: Optional[SyncHistoryStore] = None,
    ):
        self.registry = registry
        self.directory = directory
        self.namespace = namespace
        self.provisioner = provisioner
        self.history = history

    def tracked_keys(self) -> Set[str]:
        """Keys of every identity record in the configured namespace."""
        return {
            IdentityRecord.from_resource(r).key
            for r in self.registry.list(ResourceKind.IDENTITY_RECORD, self.namespace)
        }

    def run(self) -> SyncReport:
        """Run a single pass and return its report."""
        report = SyncReport(
            id=f"sync_{uuid4().hex[:12]}",
            started_at=datetime.utcnow(),
        )

        snapshot = self.directory.snapshot()
        tracked = self.tracked_keys()
        diff = diff_membership(set(snapshot.keys), tracked)

        report.snapshot_taken_at = snapshot.taken_at
        report.directory_count = len(snapshot.keys)
        report.tracked_count = len(tracked)

        logger.info(
            "Sync %s: %d in directory, %d tracked, %d to create, %d to delete",
            report.id, report.directory_count, report.tracked_count,
            len(diff.to_create), len(diff.to_delete),
        )

        for key in diff.to_create:
            self._apply(report, "create", key, self._create_record)
        for key in diff.to_delete:
            self._apply(report, "delete", key, self._delete_record)

        report.finished_at = datetime.utcnow()

        if report.failures:
            logger.warning(
                "Sync %s finished with %d failure(s): %s",
                report.id, len(report.failures), ", ".join(report.failed_keys),
            )
        else:
            logger.info(
                "Sync %s finished: %d created, %d deleted, %d already converged",
                report.id, len(report.created), len(report.deleted), len(report.absorbed),
            )

        if self.history is not None:
            self.history.append(report)
        return report

    def _apply(
        self,
        report: SyncReport,
        operation: str,
        key: str,
        action: Callable[[str], bool],
    ) -> None:
        """Attempt one item in isolation and record its outcome."""
        try:
            changed = action(key)
        except OperatorError as e:
            logger.warning("Sync %s: %s %s failed: %s", report.id, operation, key, e)
            report.failures.append(ItemFailure(
                key=key,
                operation=operation,
                reason=str(e),
                retryable=isinstance(e, RetryableError),
            ))
            return
        except Exception as e:
            logger.exception("Sync %s: unexpected error on %s %s", report.id, operation, key)
            report.failures.append(ItemFailure(
                key=key, operation=operation, reason=repr(e), retryable=False,
            ))
            return

        if not changed:
            report.absorbed.append(key)
        elif operation == "create":
            report.created.append(key)
        else:
            report.deleted.append(key)

    def _create_record(self, key: str) -> bool:
        record = IdentityRecord(key=key, namespace=self.namespace)
        try:
            self.registry.create(record.to_resource())
        except ResourceConflict:
            logger.debug("Identity record %s already exists", key)
            return False
        logger.info("Created identity record %s", key)
        return True

    def _delete_record(self, key: str) -> bool:
        if self.provisioner is not None:
            self._mark_decommissioning(key)
            self.provisioner.teardown(key)
        try:
            self.registry.delete(identity_ref(key, self.namespace))
        except ResourceNotFound:
            logger.debug("Identity record %s already deleted", key)
            return False
        logger.info("Deleted identity record %s", key)
        return True

    def _mark_decommissioning(self, key: str) -> None:
        """A record whose bundle is being torn down never reads Provisioned."""
        record = IdentityRecord(
            key=key,
            namespace=self.namespace,
            bundle_state=BundleState.DECOMMISSIONING,
            transitioned_at=datetime.utcnow(),
        )
        try:
            self.registry.update_status(record.ref, record.status_body())
        except ResourceNotFound:
            logger.debug("Identity record %s already deleted", key)
