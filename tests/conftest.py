from __future__ import annotations

from collections import Counter
import copy
from datetime import UTC, datetime
from typing import Any

import pytest
from kubernetes import client
from kubernetes.client import ApiException
from prometheus_client import CollectorRegistry

from datamover_operator.config import OperatorConfig
from datamover_operator.constants import API_GROUP, KIND_POPULATOR
from datamover_operator.k8s import ResourceAlreadyExistsError, ResourceConflictError, ResourceNotFoundError
from datamover_operator.metrics import MetricsRecorder

_WRITE_VERBS = {"create", "replace", "replace_status", "delete"}


class FakeResourceStore:
    """In-memory stand-in for ``ResourceStore`` with resourceVersion checks.

    Objects are deep-copied on the way in and out, so callers only ever see
    snapshots. ``conflicts`` injects a number of stale-version failures per
    object and ``held_deletions`` keeps deleted objects around with a
    deletion timestamp until ``finalize`` is called.
    """

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str, str], Any] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.conflicts: Counter[tuple[str, str, str]] = Counter()
        self.held_deletions: set[tuple[str, str, str]] = set()
        self._version = 0
        self._uid = 0

    # -- seeding helpers --------------------------------------------------

    def add_datamover(
        self,
        name: str = "backup",
        namespace: str = "default",
        *,
        spec: dict[str, Any] | None = None,
        status: dict[str, Any] | None = None,
    ) -> None:
        resource: dict[str, Any] = {
            "apiVersion": f"{API_GROUP}/v1alpha1",
            "kind": "DataMover",
            "metadata": {"name": name, "namespace": namespace, "uid": f"dm-uid-{name}"},
            "spec": spec if spec is not None else {"sourcePvc": "app-data", "secretName": "s3-creds"},
        }
        if status is not None:
            resource["status"] = status
        self._put(("datamover", namespace, name), resource)

    def add_populator(
        self,
        name: str = "restore",
        namespace: str = "default",
        *,
        spec: dict[str, Any] | None = None,
    ) -> None:
        resource = {
            "apiVersion": f"{API_GROUP}/v1alpha1",
            "kind": KIND_POPULATOR,
            "metadata": {"name": name, "namespace": namespace},
            "spec": spec if spec is not None else {"secretName": "s3-creds", "path": "backups/app-data"},
        }
        self._put(("populator", namespace, name), resource)

    def add_claim(
        self,
        name: str,
        namespace: str = "default",
        *,
        phase: str | None = "Bound",
        storage: str = "5Gi",
        storage_class: str | None = "standard",
        access_modes: list[str] | None = None,
        populator: str | None = None,
        volume_name: str | None = None,
        annotations: dict[str, str] | None = None,
    ) -> None:
        data_source_ref = None
        if populator is not None:
            data_source_ref = client.V1TypedObjectReference(api_group=API_GROUP, kind=KIND_POPULATOR, name=populator)
        claim = client.V1PersistentVolumeClaim(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace, annotations=annotations),
            spec=client.V1PersistentVolumeClaimSpec(
                access_modes=access_modes or ["ReadWriteOnce"],
                resources=client.V1VolumeResourceRequirements(requests={"storage": storage}),
                storage_class_name=storage_class,
                volume_mode="Filesystem",
                volume_name=volume_name,
                data_source_ref=data_source_ref,
            ),
            status=client.V1PersistentVolumeClaimStatus(phase=phase) if phase else None,
        )
        self._put(("pvc", namespace, name), claim)

    def add_secret(self, name: str = "s3-creds", namespace: str = "default", *, keys: tuple[str, ...] = ()) -> None:
        secret = client.V1Secret(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            data={key: "c2VjcmV0" for key in keys},
        )
        self._put(("secret", namespace, name), secret)

    def bind_claim(self, name: str, namespace: str = "default", *, volume_name: str) -> None:
        """Simulate the provisioner: bind a claim to a fresh volume that references it."""
        claim = self.objects[("pvc", namespace, name)]
        claim.spec.volume_name = volume_name
        claim.status = client.V1PersistentVolumeClaimStatus(phase="Bound")
        volume = client.V1PersistentVolume(
            metadata=client.V1ObjectMeta(name=volume_name),
            spec=client.V1PersistentVolumeSpec(
                capacity={"storage": "5Gi"},
                persistent_volume_reclaim_policy="Delete",
                claim_ref=client.V1ObjectReference(
                    kind="PersistentVolumeClaim",
                    name=name,
                    namespace=namespace,
                    uid=claim.metadata.uid,
                ),
            ),
        )
        self._put(("pv", "", volume_name), volume)

    def set_claim_phase(self, name: str, namespace: str = "default", *, phase: str) -> None:
        self.objects[("pvc", namespace, name)].status = client.V1PersistentVolumeClaimStatus(phase=phase)

    def set_job_status(
        self,
        name: str,
        namespace: str = "default",
        *,
        succeeded: int | None = None,
        failed: int | None = None,
        failed_condition: bool = False,
    ) -> None:
        conditions = None
        if failed_condition:
            conditions = [client.V1JobCondition(type="Failed", status="True", reason="BackoffLimitExceeded")]
        self.objects[("job", namespace, name)].status = client.V1JobStatus(
            succeeded=succeeded,
            failed=failed,
            conditions=conditions,
        )

    def finalize(self, kind: str, name: str, namespace: str = "default") -> None:
        self.held_deletions.discard((kind, namespace, name))
        self.objects.pop((kind, namespace, name), None)

    # -- inspection helpers -----------------------------------------------

    def get(self, kind: str, name: str, namespace: str = "default") -> Any:
        return copy.deepcopy(self.objects.get((kind, namespace, name)))

    def names(self, kind: str) -> list[str]:
        return sorted(key[2] for key in self.objects if key[0] == kind)

    def writes(self) -> list[tuple[str, str, str]]:
        return [call for call in self.calls if call[0] in _WRITE_VERBS]

    # -- ResourceStore surface --------------------------------------------

    def read_datamover(self, namespace: str, name: str) -> dict[str, Any] | None:
        return self._read("datamover", namespace, name)

    def replace_datamover_status(self, body: dict[str, Any]) -> dict[str, Any]:
        metadata = body["metadata"]
        return self._replace("datamover", metadata["namespace"], metadata["name"], body, verb="replace_status")

    def read_populator(self, namespace: str, name: str) -> dict[str, Any] | None:
        return self._read("populator", namespace, name)

    def read_pvc(self, namespace: str, name: str) -> client.V1PersistentVolumeClaim | None:
        return self._read("pvc", namespace, name)

    def create_pvc(self, namespace: str, body: client.V1PersistentVolumeClaim) -> client.V1PersistentVolumeClaim:
        return self._create("pvc", namespace, body)

    def replace_pvc(self, body: client.V1PersistentVolumeClaim) -> client.V1PersistentVolumeClaim:
        return self._replace("pvc", body.metadata.namespace, body.metadata.name, body)

    def delete_pvc(self, namespace: str, name: str) -> bool:
        return self._delete("pvc", namespace, name)

    def read_pv(self, name: str) -> client.V1PersistentVolume | None:
        return self._read("pv", "", name)

    def replace_pv(self, body: client.V1PersistentVolume) -> client.V1PersistentVolume:
        return self._replace("pv", "", body.metadata.name, body)

    def read_job(self, namespace: str, name: str) -> client.V1Job | None:
        return self._read("job", namespace, name)

    def create_job(self, namespace: str, body: client.V1Job) -> client.V1Job:
        return self._create("job", namespace, body)

    def delete_job(self, namespace: str, name: str, *, propagation_policy: str = "Background") -> bool:
        return self._delete("job", namespace, name)

    def read_secret(self, namespace: str, name: str) -> client.V1Secret | None:
        return self._read("secret", namespace, name)

    # -- internals --------------------------------------------------------

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _put(self, key: tuple[str, str, str], obj: Any) -> None:
        obj = copy.deepcopy(obj)
        _set_resource_version(obj, self._next_version())
        if not isinstance(obj, dict):
            self._uid += 1
            obj.metadata.uid = obj.metadata.uid or f"uid-{self._uid}"
        self.objects[key] = obj

    def _read(self, kind: str, namespace: str, name: str) -> Any:
        self.calls.append(("read", kind, name))
        return copy.deepcopy(self.objects.get((kind, namespace, name)))

    def _create(self, kind: str, namespace: str, body: Any) -> Any:
        name = body.metadata.name
        self.calls.append(("create", kind, name))
        key = (kind, namespace, name)
        if key in self.objects:
            raise ResourceAlreadyExistsError(
                operation=f"create {kind} '{namespace}/{name}'",
                error=ApiException(status=409, reason="AlreadyExists"),
            )
        self._put(key, body)
        return copy.deepcopy(self.objects[key])

    def _replace(self, kind: str, namespace: str, name: str, body: Any, *, verb: str = "replace") -> Any:
        self.calls.append((verb, kind, name))
        key = (kind, namespace, name)
        operation = f"{verb} {kind} '{namespace}/{name}'"
        current = self.objects.get(key)
        if current is None:
            raise ResourceNotFoundError(operation=operation, error=ApiException(status=404, reason="Not Found"))
        if self.conflicts[key] > 0:
            self.conflicts[key] -= 1
            raise ResourceConflictError(operation=operation, error=ApiException(status=409, reason="Conflict"))
        if _resource_version(body) != _resource_version(current):
            raise ResourceConflictError(operation=operation, error=ApiException(status=409, reason="Conflict"))

        stored = copy.deepcopy(body)
        _set_resource_version(stored, self._next_version())
        self.objects[key] = stored
        return copy.deepcopy(stored)

    def _delete(self, kind: str, namespace: str, name: str) -> bool:
        self.calls.append(("delete", kind, name))
        key = (kind, namespace, name)
        current = self.objects.get(key)
        if current is None:
            return False
        if key in self.held_deletions:
            current.metadata.deletion_timestamp = current.metadata.deletion_timestamp or datetime(2024, 1, 1, tzinfo=UTC)
            return True
        del self.objects[key]
        return True


def _resource_version(obj: Any) -> str | None:
    if isinstance(obj, dict):
        return (obj.get("metadata") or {}).get("resourceVersion")
    return obj.metadata.resource_version


def _set_resource_version(obj: Any, version: str) -> None:
    if isinstance(obj, dict):
        obj.setdefault("metadata", {})["resourceVersion"] = version
    else:
        obj.metadata.resource_version = version


@pytest.fixture
def store() -> FakeResourceStore:
    return FakeResourceStore()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsRecorder:
    return MetricsRecorder(registry=registry)


@pytest.fixture
def operator_config() -> OperatorConfig:
    return OperatorConfig(
        default_image="ghcr.io/qjoly/datamover-rclone",
        default_image_tag="latest",
        default_pull_policy="Always",
    )


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    delays: list[float] = []
    monkeypatch.setattr("datamover_operator.retry.time.sleep", delays.append)
    return delays
