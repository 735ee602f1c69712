"""
Error taxonomy for the operator.

Retryable errors are returned to the caller, who re-triggers with backoff.
Conflict and not-found outcomes are raised by registries so that callers can
absorb them as success where the operation is idempotent.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ldap_operator.models.resources import ResourceRef
    from ldap_operator.models.sync import SyncReport


class OperatorError(Exception):
    """Base class for every error raised by the operator."""
    pass


class RetryableError(OperatorError):
    """The operation may succeed if attempted again later."""
    pass


class DirectoryUnavailable(RetryableError):
    """Connecting, binding or searching the directory failed."""
    pass


class ResourceStoreUnavailable(RetryableError):
    """The resource store rejected or could not serve a request."""
    pass


class ResourceConflict(OperatorError):
    """Create was called for a resource that already exists."""

    def __init__(self, ref: "ResourceRef"):
        self.ref = ref
        super().__init__(f"{ref} already exists")


class ResourceNotFound(OperatorError):
    """The referenced resource does not exist."""

    def __init__(self, ref: "ResourceRef"):
        self.ref = ref
        super().__init__(f"{ref} not found")


class PartialBatchFailure(OperatorError):
    """One or more items of a bulk sync pass failed."""

    def __init__(self, report: "SyncReport"):
        self.report = report
        failed = ", ".join(
            f"{f.key} ({f.operation}: {f.reason})" for f in report.failures
        )
        super().__init__(
            f"Sync pass {report.id} failed for {len(report.failures)} key(s): {failed}"
        )
