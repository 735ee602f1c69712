"""
Identity Reconciler — drives one identity's bundle to match the directory.

States:
  VERIFYING → PROVISIONING → PROVISIONED
  VERIFYING → DECOMMISSIONING → DECOMMISSIONED (record removed)

The reconciler is level-triggered: a pass depends only on what it observes
now, never on earlier passes. Repeating a pass, or resuming after an
interrupted one, converges to the same end state because every provisioner
call is idempotent.

Retryable errors (DirectoryUnavailable, ResourceStoreUnavailable) are written
to the record's status message and propagate to the caller, who is expected
to re-trigger with backoff. The next successful pass clears the message.
"""

import logging
from datetime import datetime

from ldap_operator.directory.client import DirectoryClient
from ldap_operator.errors import OperatorError, ResourceNotFound, RetryableError
from ldap_operator.models.identity import BundleState, IdentityRecord, identity_ref
from ldap_operator.models.reconcile import ReconcilePhase, ReconcileResult
from ldap_operator.provisioner.bundle import ResourceBundleProvisioner
from ldap_operator.registry.store import ResourceRegistry

logger = logging.getLogger(__name__)


class _RecordGone(Exception):
    """The identity record was deleted while a pass was running."""
    pass


class IdentityReconciler:
    """Per-key state machine."""

    def __init__(
        self,
        registry: ResourceRegistry,
        directory: DirectoryClient,
        provisioner: ResourceBundleProvisioner,
        namespace: str,
    ):
        self.registry = registry
        self.directory = directory
        self.provisioner = provisioner
        self.namespace = namespace

    def reconcile(self, key: str) -> ReconcileResult:
        """Run one pass for key and return the phase it ended in."""
        try:
            resource = self.registry.get(identity_ref(key, self.namespace))
        except ResourceNotFound:
            logger.debug("Identity record %s not found, nothing to do", key)
            return ReconcileResult(key=key, phase=ReconcilePhase.GONE)

        record = IdentityRecord.from_resource(resource)
        in_directory = None

        try:
            # VERIFYING
            in_directory = self.directory.fetch_one(key)
            if in_directory:
                return self._provision(record)
            return self._decommission(record)
        except _RecordGone:
            logger.info("Identity record %s deleted during reconcile", key)
            return ReconcileResult(
                key=key, phase=ReconcilePhase.GONE, in_directory=in_directory
            )
        except RetryableError as e:
            self._record_error(key, e)
            raise

    def _provision(self, record: IdentityRecord) -> ReconcileResult:
        # An already-provisioned record is re-ensured without a state round-trip.
        if record.bundle_state != BundleState.PROVISIONED:
            record = self._set_state(record, BundleState.PROVISIONING)

        provision = self.provisioner.ensure(record.key)
        record = self._set_state(record, BundleState.PROVISIONED)

        if provision.changed:
            logger.info(
                "Provisioned %s (created: %s)", record.key, ", ".join(provision.created)
            )
        return ReconcileResult(
            key=record.key,
            phase=ReconcilePhase.PROVISIONED,
            in_directory=True,
            provision=provision,
        )

    def _decommission(self, record: IdentityRecord) -> ReconcileResult:
        logger.info("%s not found in directory, decommissioning", record.key)
        record = self._set_state(record, BundleState.DECOMMISSIONING)

        provision = self.provisioner.teardown(record.key)

        deleted = True
        try:
            self.registry.delete(record.ref)
        except ResourceNotFound:
            deleted = False

        return ReconcileResult(
            key=record.key,
            phase=ReconcilePhase.DECOMMISSIONED,
            in_directory=False,
            provision=provision,
            record_deleted=deleted,
        )

    def _set_state(self, record: IdentityRecord, state: BundleState) -> IdentityRecord:
        """Persist a state transition and clear any recorded error.

        Nothing is written when the state is unchanged and no error is set.
        """
        if record.bundle_state == state and record.message is None:
            return record

        update = {"message": None}
        if record.bundle_state != state:
            update.update(bundle_state=state, transitioned_at=datetime.utcnow())
        updated = record.model_copy(update=update)

        status = updated.status_body()
        if record.message is not None:
            status["message"] = None
        try:
            self.registry.update_status(updated.ref, status)
        except ResourceNotFound:
            raise _RecordGone(record.key)
        return updated

    def _record_error(self, key: str, error: Exception) -> None:
        """Best-effort write of the last failure onto the record."""
        message = str(error)
        try:
            current = IdentityRecord.from_resource(
                self.registry.get(identity_ref(key, self.namespace))
            )
            if current.message != message:
                self.registry.update_status(current.ref, {"message": message})
        except OperatorError as e:
            logger.debug("Could not record error on %s: %s", key, e)
