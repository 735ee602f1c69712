"""Per-identity reconcile and provisioning outcomes."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class ReconcilePhase(str, Enum):
    """
    Phases of a single reconcile pass.

    VERIFYING → PROVISIONING → PROVISIONED
    VERIFYING → DECOMMISSIONING → DECOMMISSIONED
    GONE: the record no longer exists; nothing to do.
    """
    VERIFYING = "verifying"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    DECOMMISSIONING = "decommissioning"
    DECOMMISSIONED = "decommissioned"
    GONE = "gone"


class ProvisionResult(BaseModel):
    """Which bundle members an ensure/teardown call changed."""

    key: str
    created: List[str] = []
    deleted: List[str] = []
    unchanged: List[str] = []               # Already present (ensure) or absent (teardown)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.deleted)


class ReconcileResult(BaseModel):
    key: str
    phase: ReconcilePhase
    in_directory: Optional[bool] = None
    provision: Optional[ProvisionResult] = None
    record_deleted: bool = False
