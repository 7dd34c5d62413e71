"""kopf wiring: one daemon per object identity drives its reconciler."""

from __future__ import annotations

import logging
from typing import Any

import kopf
from prometheus_client import start_http_server

from .config import OperatorConfig
from .constants import API_GROUP, API_VERSION, KIND_POPULATOR, PLURAL_DATAMOVERS
from .datamover import DataMoverReconciler
from .k8s import ResourceStore, load_kubernetes_clients
from .metrics import MetricsRecorder
from .models import SpecValidationError
from .populator import PopulatorReconciler

logger = logging.getLogger(__name__)

DAEMON_BACKOFF_SECONDS = 15.0
DAEMON_CANCELLATION_TIMEOUT_SECONDS = 10.0


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Any) -> None:
    config = OperatorConfig()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings.posting.level = logging.WARNING

    clients = load_kubernetes_clients(
        kubeconfig_path=config.kubeconfig_path,
        context=config.kube_context,
        in_cluster=config.in_cluster,
    )
    store = ResourceStore(clients)
    metrics = MetricsRecorder()

    try:
        start_http_server(config.metrics_port)
        logger.info("Prometheus metrics server started on port %d", config.metrics_port)
    except OSError as error:
        logger.warning("Failed to start metrics server on port %d: %s", config.metrics_port, error)

    memo.datamovers = DataMoverReconciler(store=store, metrics=metrics, config=config)
    memo.populators = PopulatorReconciler(store=store, metrics=metrics, config=config)
    logger.info("DataMover operator started")


@kopf.on.cleanup()
def shutdown(**_: Any) -> None:
    logger.info("DataMover operator shutting down")


@kopf.daemon(
    API_GROUP,
    API_VERSION,
    PLURAL_DATAMOVERS,
    backoff=DAEMON_BACKOFF_SECONDS,
    cancellation_timeout=DAEMON_CANCELLATION_TIMEOUT_SECONDS,
)
def run_datamover(name: str, namespace: str, memo: kopf.Memo, stopped: kopf.DaemonStopped, **_: Any) -> None:
    drive(memo.datamovers, namespace=namespace, name=name, stopped=stopped)


@kopf.on.delete(API_GROUP, API_VERSION, PLURAL_DATAMOVERS, optional=True)
def forget_datamover(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> None:
    memo.datamovers.forget(namespace, name)


def references_populator(spec: Any, **_: Any) -> bool:
    reference = (spec or {}).get("dataSourceRef") or {}
    return reference.get("apiGroup") == API_GROUP and reference.get("kind") == KIND_POPULATOR


@kopf.daemon(
    "v1",
    "persistentvolumeclaims",
    when=references_populator,
    backoff=DAEMON_BACKOFF_SECONDS,
    cancellation_timeout=DAEMON_CANCELLATION_TIMEOUT_SECONDS,
)
def run_populator(name: str, namespace: str, memo: kopf.Memo, stopped: kopf.DaemonStopped, **_: Any) -> None:
    drive(memo.populators, namespace=namespace, name=name, stopped=stopped)


def drive(
    reconciler: DataMoverReconciler | PopulatorReconciler,
    *,
    namespace: str,
    name: str,
    stopped: kopf.DaemonStopped,
) -> None:
    """Re-run ``reconciler`` for one identity until it reports done or the daemon stops.

    Validation failures become permanent errors. Anything else propagates so
    kopf restarts the daemon after its backoff.
    """
    while not stopped:
        try:
            result = reconciler.reconcile(namespace, name)
        except SpecValidationError as error:
            raise kopf.PermanentError(str(error)) from error
        if result.done:
            return
        stopped.wait(result.requeue_after)


def main() -> None:
    config = OperatorConfig()
    namespaces = [config.watch_namespace] if config.watch_namespace else []
    kopf.run(standalone=True, clusterwide=not namespaces, namespaces=namespaces)


if __name__ == "__main__":
    main()
