"""
LDAP Operator API — FastAPI endpoints.

Exposes the reconciliation engine for:
- Health and controller status
- Identity record inspection
- Manual per-identity reconcile
- Manual bulk sync and sync history
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from ldap_operator.controller.manager import ControllerManager
from ldap_operator.directory.client import DirectoryClient
from ldap_operator.errors import ResourceNotFound, RetryableError
from ldap_operator.history.store import SyncHistoryStore
from ldap_operator.models.config import ControllerConfig
from ldap_operator.models.identity import IdentityRecord, identity_ref
from ldap_operator.models.resources import ResourceKind
from ldap_operator.provisioner.bundle import ResourceBundleProvisioner
from ldap_operator.reconciler.identity import IdentityReconciler
from ldap_operator.registry.store import ResourceRegistry
from ldap_operator.sync.engine import BulkSyncEngine


# --- Response Models ---

class HealthResponse(BaseModel):
    status: str
    controller: str
    namespace: str
    last_sync_id: Optional[str] = None


# --- Application Factory ---

def create_app(
    registry: ResourceRegistry,
    directory: DirectoryClient,
    namespace: str = "ldap-space",
    history: Optional[SyncHistoryStore] = None,
    controller_config: Optional[ControllerConfig] = None,
    run_controller: bool = False,
    workload_image: str = "busybox",
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    With run_controller=True the controller manager is started and stopped
    with the application lifespan.
    """

    hs = history or SyncHistoryStore()
    provisioner = ResourceBundleProvisioner(registry, workload_image=workload_image)
    reconciler = IdentityReconciler(
        registry=registry,
        directory=directory,
        provisioner=provisioner,
        namespace=namespace,
    )
    engine = BulkSyncEngine(
        registry=registry,
        directory=directory,
        namespace=namespace,
        provisioner=provisioner,
        history=hs,
    )
    manager = ControllerManager(reconciler, engine, controller_config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_controller:
            await manager.start()
        try:
            yield
        finally:
            if run_controller:
                await manager.stop()
            registry.close()

    app = FastAPI(
        title="LDAP Operator API",
        description="Directory-driven provisioning of per-identity resource bundles",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store components on app state for access in endpoints
    app.state.registry = registry
    app.state.directory = directory
    app.state.history = hs
    app.state.provisioner = provisioner
    app.state.reconciler = reconciler
    app.state.sync_engine = engine
    app.state.manager = manager

    # === HEALTH ===

    @app.get("/healthz", response_model=HealthResponse)
    def healthz():
        latest = hs.latest()
        return HealthResponse(
            status="ok",
            controller=manager.status if run_controller else "disabled",
            namespace=namespace,
            last_sync_id=latest.id if latest else None,
        )

    # === IDENTITY RECORDS ===

    @app.get("/records")
    def list_records():
        """All tracked identity records."""
        try:
            resources = registry.list(ResourceKind.IDENTITY_RECORD, namespace)
        except RetryableError as e:
            raise HTTPException(503, str(e))
        return [
            IdentityRecord.from_resource(r).model_dump(mode="json") for r in resources
        ]

    @app.get("/records/{key}")
    def get_record(key: str):
        try:
            resource = registry.get(identity_ref(key, namespace))
        except ResourceNotFound:
            raise HTTPException(404, "Identity record not found")
        except RetryableError as e:
            raise HTTPException(503, str(e))
        record = IdentityRecord.from_resource(resource)
        return {
            "record": record.model_dump(mode="json"),
            "bundle": [r.ref.model_dump(mode="json") for r in provisioner.bundle(key)],
        }

    @app.post("/records/{key}/reconcile")
    def reconcile_record(key: str):
        """Run the reconciler for one identity now."""
        try:
            result = reconciler.reconcile(key)
        except RetryableError as e:
            raise HTTPException(503, str(e))
        return result.model_dump(mode="json")

    # === BULK SYNC ===

    @app.post("/sync")
    def trigger_sync():
        """Run one bulk pass. Per-key failures are part of the report."""
        try:
            report = engine.run()
        except RetryableError as e:
            raise HTTPException(503, str(e))
        return report.model_dump(mode="json")

    @app.get("/sync/history")
    def sync_history(limit: int = 20):
        return [r.model_dump(mode="json") for r in hs.query_recent(limit)]

    @app.get("/sync/history/{report_id}")
    def get_sync_report(report_id: str):
        report = hs.get_by_id(report_id)
        if report is None:
            raise HTTPException(404, "Sync report not found")
        return report.model_dump(mode="json")

    return app
