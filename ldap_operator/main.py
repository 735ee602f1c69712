"""Process entry point: settings, logging, wiring, HTTP server."""

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI

from ldap_operator.api.app import create_app
from ldap_operator.directory.client import DirectoryClient
from ldap_operator.history.store import SyncHistoryStore
from ldap_operator.models.config import OperatorSettings
from ldap_operator.registry.kubernetes import KubernetesResourceRegistry, load_kube_config

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Single-line records on stdout at the configured level."""
    logging.basicConfig(
        level=level.upper(),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    # The Kubernetes client logs every request at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def build_app(settings: Optional[OperatorSettings] = None) -> FastAPI:
    """Wire the Kubernetes registry and LDAP directory into the API."""
    settings = settings or OperatorSettings()

    load_kube_config(settings.registry)
    registry = KubernetesResourceRegistry(settings.registry)
    directory = DirectoryClient(settings.directory)

    return create_app(
        registry=registry,
        directory=directory,
        namespace=settings.registry.namespace,
        history=SyncHistoryStore(settings.history_db_path),
        controller_config=settings.controller,
        run_controller=True,
        workload_image=settings.registry.workload_image,
    )


def run() -> None:
    settings = OperatorSettings()
    configure_logging(settings.log_level)
    logging.getLogger(__name__).info(
        "Starting ldap-operator for %s:%d, records in namespace %s",
        settings.directory.host, settings.directory.port, settings.registry.namespace,
    )
    app = build_app(settings)
    uvicorn.run(
        app,
        host=settings.http_host,
        port=settings.http_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
