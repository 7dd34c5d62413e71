from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .constants import API_GROUP, API_VERSION, PLURAL_DATAMOVERS, PLURAL_POPULATORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    batch_api: client.BatchV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class ResourceStoreError(RuntimeError):
    def __init__(self, *, operation: str, error: ApiException) -> None:
        super().__init__(_format_api_exception_message(operation=operation, error=error))
        self.operation = operation
        self.status = error.status


class ResourceNotFoundError(ResourceStoreError):
    """The object addressed by a write no longer exists."""


class ResourceConflictError(ResourceStoreError):
    """A write carried a stale resourceVersion."""


class ResourceAlreadyExistsError(ResourceStoreError):
    """A create collided with an existing object of the same name."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


class ResourceStore:
    """Typed access to the objects the reconcilers drive.

    Reads return ``None`` when the object is absent and deletes return ``False``
    when it is already gone. Writes raise ``ResourceConflictError`` on a stale
    resourceVersion, ``ResourceNotFoundError`` when the target vanished and
    ``ResourceAlreadyExistsError`` when a create collides. Every other
    ``ApiException`` propagates unchanged.
    """

    def __init__(self, clients: KubernetesClients) -> None:
        self.core_api = clients.core_api
        self.batch_api = clients.batch_api
        self.custom_api = clients.custom_api

    # -- custom resources -------------------------------------------------

    def read_datamover(self, namespace: str, name: str) -> dict[str, Any] | None:
        return _read(
            operation=f"get DataMover '{namespace}/{name}'",
            func=lambda: self.custom_api.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=namespace,
                plural=PLURAL_DATAMOVERS,
                name=name,
            ),
        )

    def replace_datamover_status(self, body: dict[str, Any]) -> dict[str, Any]:
        metadata = body["metadata"]
        namespace, name = metadata["namespace"], metadata["name"]
        return _write(
            operation=f"update status of DataMover '{namespace}/{name}'",
            func=lambda: self.custom_api.replace_namespaced_custom_object_status(
                group=API_GROUP,
                version=API_VERSION,
                namespace=namespace,
                plural=PLURAL_DATAMOVERS,
                name=name,
                body=body,
            ),
        )

    def read_populator(self, namespace: str, name: str) -> dict[str, Any] | None:
        return _read(
            operation=f"get DataMoverPopulator '{namespace}/{name}'",
            func=lambda: self.custom_api.get_namespaced_custom_object(
                group=API_GROUP,
                version=API_VERSION,
                namespace=namespace,
                plural=PLURAL_POPULATORS,
                name=name,
            ),
        )

    # -- persistent volume claims ----------------------------------------

    def read_pvc(self, namespace: str, name: str) -> client.V1PersistentVolumeClaim | None:
        return _read(
            operation=f"get PVC '{namespace}/{name}'",
            func=lambda: self.core_api.read_namespaced_persistent_volume_claim(name=name, namespace=namespace),
        )

    def create_pvc(self, namespace: str, body: client.V1PersistentVolumeClaim) -> client.V1PersistentVolumeClaim:
        return _write(
            operation=f"create PVC '{namespace}/{body.metadata.name}'",
            func=lambda: self.core_api.create_namespaced_persistent_volume_claim(namespace=namespace, body=body),
            creating=True,
        )

    def replace_pvc(self, body: client.V1PersistentVolumeClaim) -> client.V1PersistentVolumeClaim:
        namespace, name = body.metadata.namespace, body.metadata.name
        return _write(
            operation=f"update PVC '{namespace}/{name}'",
            func=lambda: self.core_api.replace_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                body=body,
            ),
        )

    def delete_pvc(self, namespace: str, name: str) -> bool:
        return _delete(
            operation=f"delete PVC '{namespace}/{name}'",
            func=lambda: self.core_api.delete_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(),
            ),
        )

    # -- persistent volumes -----------------------------------------------

    def read_pv(self, name: str) -> client.V1PersistentVolume | None:
        return _read(
            operation=f"get PersistentVolume '{name}'",
            func=lambda: self.core_api.read_persistent_volume(name=name),
        )

    def replace_pv(self, body: client.V1PersistentVolume) -> client.V1PersistentVolume:
        name = body.metadata.name
        return _write(
            operation=f"update PersistentVolume '{name}'",
            func=lambda: self.core_api.replace_persistent_volume(name=name, body=body),
        )

    # -- jobs and secrets -------------------------------------------------

    def read_job(self, namespace: str, name: str) -> client.V1Job | None:
        return _read(
            operation=f"get Job '{namespace}/{name}'",
            func=lambda: self.batch_api.read_namespaced_job(name=name, namespace=namespace),
        )

    def create_job(self, namespace: str, body: client.V1Job) -> client.V1Job:
        return _write(
            operation=f"create Job '{namespace}/{body.metadata.name}'",
            func=lambda: self.batch_api.create_namespaced_job(namespace=namespace, body=body),
            creating=True,
        )

    def delete_job(self, namespace: str, name: str, *, propagation_policy: str = "Background") -> bool:
        return _delete(
            operation=f"delete Job '{namespace}/{name}'",
            func=lambda: self.batch_api.delete_namespaced_job(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy=propagation_policy),
            ),
        )

    def read_secret(self, namespace: str, name: str) -> client.V1Secret | None:
        return _read(
            operation=f"get Secret '{namespace}/{name}'",
            func=lambda: self.core_api.read_namespaced_secret(name=name, namespace=namespace),
        )


def is_terminating(obj: Any) -> bool:
    metadata = getattr(obj, "metadata", None)
    return bool(metadata is not None and getattr(metadata, "deletion_timestamp", None))


def _read(*, operation: str, func: Callable[[], T]) -> T | None:
    try:
        return func()
    except ApiException as error:
        if error.status == 404:
            return None
        logger.error("Kubernetes API call failed: %s", _format_api_exception_message(operation=operation, error=error))
        raise


def _write(*, operation: str, func: Callable[[], T], creating: bool = False) -> T:
    try:
        return func()
    except ApiException as error:
        if error.status == 404:
            raise ResourceNotFoundError(operation=operation, error=error) from error
        if error.status == 409:
            if creating:
                raise ResourceAlreadyExistsError(operation=operation, error=error) from error
            raise ResourceConflictError(operation=operation, error=error) from error
        logger.error("Kubernetes API call failed: %s", _format_api_exception_message(operation=operation, error=error))
        raise


def _delete(*, operation: str, func: Callable[[], Any]) -> bool:
    try:
        func()
        return True
    except ApiException as error:
        if error.status == 404:
            return False
        logger.error("Kubernetes API call failed: %s", _format_api_exception_message(operation=operation, error=error))
        raise


def _format_api_exception_message(*, operation: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return f"failed to {operation}: API status {status} ({reason})"


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
