"""Bulk sync models — membership diffs and pass reports."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class MembershipDiff(BaseModel):
    """Keys to create and delete; disjoint by construction."""

    to_create: List[str] = []
    to_delete: List[str] = []

    @property
    def empty(self) -> bool:
        return not self.to_create and not self.to_delete


class ItemFailure(BaseModel):
    """A single key the pass could not converge."""

    key: str
    operation: str                          # "create" | "delete"
    reason: str
    retryable: bool = True


class SyncReport(BaseModel):
    """
    Aggregate outcome of one bulk sync pass.

    Each key lands in exactly one of created, deleted, absorbed or failures.
    Absorbed keys were already in the target state when the pass reached them.
    """

    id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    snapshot_taken_at: Optional[datetime] = None
    directory_count: int = 0
    tracked_count: int = 0
    created: List[str] = []
    deleted: List[str] = []
    absorbed: List[str] = []
    failures: List[ItemFailure] = []

    @property
    def succeeded(self) -> bool:
        return not self.failures

    @property
    def failed_keys(self) -> List[str]:
        return [f.key for f in self.failures]

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any item failed."""
        from ldap_operator.errors import PartialBatchFailure

        if self.failures:
            raise PartialBatchFailure(self)
