from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from .config import OperatorConfig
from .constants import (
    ANNOTATION_CLEANUP_IN_PROGRESS,
    ANNOTATION_POPULATED,
    ANNOTATION_POPULATING,
    ANNOTATION_TRUE,
)


class SpecValidationError(ValueError):
    """Raised when a request is missing a required field. Never retried."""


class DependentResourceMissingError(RuntimeError):
    """A resource the current step depends on does not exist (yet)."""


class ForeignResourceError(RuntimeError):
    """An object at a derived name is controlled by a different owner."""


class Phase(str, Enum):
    INITIAL = ""
    CREATING_CLONED_PVC = "CreatingClonedPVC"
    CLONED_PVC_READY = "ClonedPVCReady"
    CREATING_POD = "CreatingPod"
    CLEANING_UP = "CleaningUp"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in {Phase.COMPLETED, Phase.FAILED}

    @property
    def metric_value(self) -> int:
        return list(Phase).index(self)

    @classmethod
    def parse(cls, value: str | None) -> Phase:
        try:
            return cls(value or "")
        except ValueError as error:
            raise SpecValidationError(f"unknown DataMover phase '{value}'") from error


class PopulationState(str, Enum):
    PENDING = "pending"
    POPULATING = "populating"
    HANDING_OFF = "handing-off"
    POPULATED = "populated"

    @classmethod
    def from_annotations(cls, annotations: Mapping[str, str] | None) -> PopulationState:
        annotations = annotations or {}
        if annotations.get(ANNOTATION_POPULATED) == ANNOTATION_TRUE:
            return cls.POPULATED
        if annotations.get(ANNOTATION_CLEANUP_IN_PROGRESS) == ANNOTATION_TRUE:
            return cls.HANDING_OFF
        if annotations.get(ANNOTATION_POPULATING) == ANNOTATION_TRUE:
            return cls.POPULATING
        return cls.PENDING


@dataclass(frozen=True)
class ImageSpec:
    repository: str
    tag: str
    pull_policy: str

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"

    @classmethod
    def resolve(cls, raw: Mapping[str, Any] | None, config: OperatorConfig) -> ImageSpec:
        raw = raw or {}
        return cls(
            repository=str(raw.get("repository") or raw.get("name") or config.default_image),
            tag=str(raw.get("tag") or config.default_image_tag),
            pull_policy=str(raw.get("pullPolicy") or config.default_pull_policy),
        )


@dataclass(frozen=True)
class DataMoverRequest:
    name: str
    namespace: str
    uid: str
    source_pvc: str
    secret_name: str
    image: ImageSpec
    add_timestamp_prefix: bool = False
    delete_pvc_after_backup: bool = False
    additional_env: tuple[dict[str, Any], ...] = ()
    phase: Phase = Phase.INITIAL
    restored_pvc_name: str | None = None

    @property
    def cleanup_requested(self) -> bool:
        return self.delete_pvc_after_backup

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any], config: OperatorConfig) -> DataMoverRequest:
        metadata = resource.get("metadata") or {}
        spec = resource.get("spec") or {}
        status = resource.get("status") or {}
        name = metadata.get("name", "")
        namespace = metadata.get("namespace", "")

        missing = [key for key in ("sourcePvc", "secretName") if not str(spec.get(key) or "").strip()]
        if missing:
            raise SpecValidationError(
                f"DataMover {namespace}/{name} is missing required spec field(s): {', '.join(missing)}"
            )

        return cls(
            name=name,
            namespace=namespace,
            uid=metadata.get("uid", ""),
            source_pvc=spec["sourcePvc"].strip(),
            secret_name=spec["secretName"].strip(),
            image=ImageSpec.resolve(spec.get("image"), config),
            add_timestamp_prefix=bool(spec.get("addTimestampPrefix", False)),
            delete_pvc_after_backup=bool(spec.get("deletePvcAfterBackup", False)),
            additional_env=tuple(spec.get("additionalEnv") or ()),
            phase=Phase.parse(status.get("phase")),
            restored_pvc_name=status.get("restoredPvcName") or None,
        )


@dataclass(frozen=True)
class PopulatorRequest:
    name: str
    namespace: str
    secret_name: str
    path: str
    image: ImageSpec
    additional_env: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_resource(cls, resource: Mapping[str, Any], config: OperatorConfig) -> PopulatorRequest:
        metadata = resource.get("metadata") or {}
        spec = resource.get("spec") or {}
        name = metadata.get("name", "")
        namespace = metadata.get("namespace", "")

        missing = [key for key in ("secretName", "path") if not str(spec.get(key) or "").strip()]
        if missing:
            raise SpecValidationError(
                f"DataMoverPopulator {namespace}/{name} is missing required spec field(s): {', '.join(missing)}"
            )

        return cls(
            name=name,
            namespace=namespace,
            secret_name=spec["secretName"].strip(),
            path=spec["path"],
            image=ImageSpec.resolve(spec.get("image"), config),
            additional_env=tuple(spec.get("additionalEnv") or ()),
        )


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one invocation: done, or re-evaluate after ``requeue_after`` seconds."""

    requeue_after: float | None = None

    @property
    def done(self) -> bool:
        return self.requeue_after is None

    @classmethod
    def finished(cls) -> ReconcileResult:
        return cls()

    @classmethod
    def requeue(cls, seconds: float = 0) -> ReconcileResult:
        return cls(requeue_after=float(seconds))
