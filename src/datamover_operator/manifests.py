from __future__ import annotations

from enum import Enum
import hashlib
import re
from typing import Any, Iterable

from kubernetes import client

from .constants import (
    API_GROUP_VERSION,
    CLONE_NAME_INFIX,
    CONFIG_MOUNT_PATH,
    DATA_MOUNT_PATH,
    ENV_ADD_TIMESTAMP_PREFIX,
    ENV_POPULATION_MODE,
    ENV_SOURCE_PATH,
    JOB_BACKOFF_LIMIT,
    KIND_DATAMOVER,
    LABEL_COMPONENT,
    LABEL_CREATED_BY,
    LABEL_DATAMOVER,
    LABEL_POPULATOR,
    LABEL_PRIME_FOR,
    LABEL_PVC,
    NOBODY_UID,
    POPULATION_JOB_PREFIX,
    PRIME_NAME_SUFFIX,
    SYNC_JOB_PREFIX,
)
from .models import DataMoverRequest, PopulatorRequest

# Kubernetes default when a Job omits spec.backoffLimit.
DEFAULT_JOB_BACKOFF_LIMIT = 6


class JobOutcome(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def clone_claim_name(source_pvc: str, unix_seconds: int) -> str:
    return f"{source_pvc}{CLONE_NAME_INFIX}{unix_seconds}"


def sync_job_name(clone_name: str) -> str:
    return _unique_dns_label(f"{SYNC_JOB_PREFIX}{clone_name}")


def prime_claim_name(target_name: str) -> str:
    return f"{target_name}{PRIME_NAME_SUFFIX}"


def population_job_name(prime_name: str) -> str:
    return _unique_dns_label(f"{POPULATION_JOB_PREFIX}{prime_name}")


def controller_owner(obj: Any) -> Any | None:
    metadata = getattr(obj, "metadata", None)
    for reference in getattr(metadata, "owner_references", None) or []:
        if reference.controller:
            return reference
    return None


def is_controlled_by(obj: Any, *, kind: str, name: str, uid: str | None = None) -> bool:
    """Whether ``obj``'s controller reference names this owner (and, when given, this uid)."""
    owner = controller_owner(obj)
    if owner is None or owner.kind != kind or owner.name != name:
        return False
    return uid is None or owner.uid == uid


def job_outcome(job: Any) -> JobOutcome:
    status = getattr(job, "status", None)
    if status is None:
        return JobOutcome.RUNNING
    if (status.succeeded or 0) > 0:
        return JobOutcome.SUCCEEDED

    for condition in status.conditions or []:
        if condition.type == "Failed" and condition.status == "True":
            return JobOutcome.FAILED

    backoff_limit = getattr(getattr(job, "spec", None), "backoff_limit", None)
    if backoff_limit is None:
        backoff_limit = DEFAULT_JOB_BACKOFF_LIMIT
    if (status.failed or 0) > backoff_limit:
        return JobOutcome.FAILED
    return JobOutcome.RUNNING


def build_clone_claim(
    *,
    request: DataMoverRequest,
    source: client.V1PersistentVolumeClaim,
    clone_name: str,
) -> client.V1PersistentVolumeClaim:
    # Shape is frozen from the source at creation time and never re-read.
    requests = dict(source.spec.resources.requests or {}) if source.spec.resources else {}
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=clone_name,
            namespace=request.namespace,
            labels={
                LABEL_DATAMOVER: request.name,
                LABEL_CREATED_BY: "datamover-operator",
            },
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=list(source.spec.access_modes or []),
            resources=client.V1VolumeResourceRequirements(requests={"storage": requests.get("storage")}),
            storage_class_name=source.spec.storage_class_name,
            data_source=client.V1TypedLocalObjectReference(
                kind="PersistentVolumeClaim",
                name=request.source_pvc,
            ),
        ),
    )


def build_prime_claim(
    *,
    target: client.V1PersistentVolumeClaim,
    populator: PopulatorRequest,
) -> client.V1PersistentVolumeClaim:
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(
            name=prime_claim_name(target.metadata.name),
            namespace=target.metadata.namespace,
            labels={
                LABEL_PRIME_FOR: target.metadata.name,
                LABEL_POPULATOR: populator.name,
            },
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=target.spec.access_modes,
            resources=target.spec.resources,
            storage_class_name=target.spec.storage_class_name,
            volume_mode=target.spec.volume_mode,
        ),
    )


def build_sync_job(*, request: DataMoverRequest, clone_name: str) -> client.V1Job:
    env: list[Any] = [
        client.V1EnvVar(
            name=ENV_ADD_TIMESTAMP_PREFIX,
            value="true" if request.add_timestamp_prefix else "false",
        )
    ]
    env.extend(request.additional_env)

    return client.V1Job(
        metadata=client.V1ObjectMeta(
            name=sync_job_name(clone_name),
            namespace=request.namespace,
            labels={
                LABEL_DATAMOVER: request.name,
                LABEL_COMPONENT: "data-sync",
                LABEL_CREATED_BY: "datamover-operator",
            },
            owner_references=[
                client.V1OwnerReference(
                    api_version=API_GROUP_VERSION,
                    kind=KIND_DATAMOVER,
                    name=request.name,
                    uid=request.uid,
                    controller=True,
                    block_owner_deletion=True,
                )
            ],
        ),
        spec=client.V1JobSpec(
            backoff_limit=JOB_BACKOFF_LIMIT,
            template=client.V1PodTemplateSpec(
                spec=client.V1PodSpec(
                    restart_policy="Never",
                    security_context=client.V1PodSecurityContext(
                        run_as_non_root=True,
                        run_as_user=NOBODY_UID,
                        run_as_group=NOBODY_UID,
                        fs_group=NOBODY_UID,
                        seccomp_profile=client.V1SeccompProfile(type="RuntimeDefault"),
                    ),
                    containers=[
                        client.V1Container(
                            name="rclone",
                            image=request.image.reference,
                            image_pull_policy=request.image.pull_policy,
                            security_context=_restricted_container_security_context(read_only_root=True),
                            env=env,
                            env_from=[
                                client.V1EnvFromSource(
                                    secret_ref=client.V1SecretEnvSource(name=request.secret_name),
                                )
                            ],
                            volume_mounts=[
                                client.V1VolumeMount(name="restored-data", mount_path=DATA_MOUNT_PATH),
                            ],
                        )
                    ],
                    volumes=[
                        client.V1Volume(
                            name="restored-data",
                            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                                claim_name=clone_name,
                            ),
                        )
                    ],
                ),
            ),
        ),
    )


def build_population_job(
    *,
    prime: client.V1PersistentVolumeClaim,
    populator: PopulatorRequest,
    secret_keys: Iterable[str],
) -> client.V1Job:
    env: list[Any] = [
        client.V1EnvVar(
            name=key,
            value_from=client.V1EnvVarSource(
                secret_key_ref=client.V1SecretKeySelector(name=populator.secret_name, key=key),
            ),
        )
        for key in sorted(secret_keys)
    ]
    env.append(client.V1EnvVar(name=ENV_SOURCE_PATH, value=populator.path))
    env.append(client.V1EnvVar(name=ENV_POPULATION_MODE, value="true"))
    env.extend(populator.additional_env)

    data_mount = client.V1VolumeMount(name="target-data", mount_path=DATA_MOUNT_PATH)
    return client.V1Job(
        metadata=client.V1ObjectMeta(
            name=population_job_name(prime.metadata.name),
            namespace=prime.metadata.namespace,
            labels={
                LABEL_CREATED_BY: "datamover-populator",
                LABEL_POPULATOR: populator.name,
                LABEL_PVC: prime.metadata.name,
            },
            owner_references=[
                client.V1OwnerReference(
                    api_version="v1",
                    kind="PersistentVolumeClaim",
                    name=prime.metadata.name,
                    uid=prime.metadata.uid,
                    controller=True,
                    block_owner_deletion=True,
                )
            ],
        ),
        spec=client.V1JobSpec(
            backoff_limit=JOB_BACKOFF_LIMIT,
            template=client.V1PodTemplateSpec(
                spec=client.V1PodSpec(
                    restart_policy="Never",
                    security_context=client.V1PodSecurityContext(
                        run_as_non_root=True,
                        run_as_user=NOBODY_UID,
                        run_as_group=NOBODY_UID,
                        seccomp_profile=client.V1SeccompProfile(type="RuntimeDefault"),
                    ),
                    init_containers=[
                        client.V1Container(
                            name="chown-data",
                            image=populator.image.reference,
                            image_pull_policy=populator.image.pull_policy,
                            command=["sh", "-c", f"chmod a+rwx {DATA_MOUNT_PATH}"],
                            # The only step allowed to run as root: it widens the mount for the nobody user.
                            security_context=client.V1SecurityContext(
                                run_as_non_root=False,
                                run_as_user=0,
                                run_as_group=0,
                                capabilities=client.V1Capabilities(add=["CHOWN"]),
                            ),
                            volume_mounts=[data_mount],
                        )
                    ],
                    containers=[
                        client.V1Container(
                            name="population",
                            image=populator.image.reference,
                            image_pull_policy=populator.image.pull_policy,
                            env=env,
                            security_context=_restricted_container_security_context(read_only_root=False),
                            volume_mounts=[
                                data_mount,
                                client.V1VolumeMount(name="config-dir", mount_path=CONFIG_MOUNT_PATH),
                            ],
                        )
                    ],
                    volumes=[
                        client.V1Volume(
                            name="target-data",
                            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                                claim_name=prime.metadata.name,
                            ),
                        ),
                        client.V1Volume(name="config-dir", empty_dir=client.V1EmptyDirVolumeSource()),
                    ],
                ),
            ),
        ),
    )


def _restricted_container_security_context(*, read_only_root: bool) -> client.V1SecurityContext:
    return client.V1SecurityContext(
        allow_privilege_escalation=False,
        run_as_non_root=True,
        run_as_user=NOBODY_UID,
        run_as_group=NOBODY_UID,
        read_only_root_filesystem=read_only_root,
        capabilities=client.V1Capabilities(drop=["ALL"]),
        seccomp_profile=client.V1SeccompProfile(type="RuntimeDefault"),
    )


def _unique_dns_label(value: str, max_length: int = 63) -> str:
    # Names that would be truncated keep a digest of the full value so distinct inputs never collide.
    sanitized = _sanitize_dns_label(value, max_length=max_length)
    if sanitized == _sanitize_dns_label(value, max_length=len(value) + 1):
        return sanitized
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    prefix = _sanitize_dns_label(value, max_length=max_length - len(digest) - 1)
    return f"{prefix}-{digest}"


def _sanitize_dns_label(value: str, max_length: int) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        normalized = normalized[:max_length].rstrip("-")
    return normalized or "datamover-job"
