from __future__ import annotations

import copy
import logging
import time
from typing import Any, Callable

from kubernetes.client import ApiException

from .config import OperatorConfig
from .constants import CLAIM_BOUND, CLAIM_LOST, CLONE_BOUND_POLL_SECONDS, KIND_DATAMOVER, SYNC_JOB_POLL_SECONDS
from .k8s import ResourceAlreadyExistsError, ResourceStore
from .manifests import (
    JobOutcome,
    build_clone_claim,
    build_sync_job,
    clone_claim_name,
    is_controlled_by,
    job_outcome,
    sync_job_name,
)
from .metrics import MetricsRecorder, PhaseClock
from .models import DataMoverRequest, DependentResourceMissingError, ForeignResourceError, Phase, ReconcileResult

logger = logging.getLogger(__name__)

Transition = Callable[[dict[str, Any], DataMoverRequest], ReconcileResult]


class SourceClaimNotFoundError(DependentResourceMissingError):
    pass


class DataMoverReconciler:
    """Drives one DataMover request through clone, sync and optional cleanup.

    Each call to ``reconcile`` performs a single phase step and returns whether
    the request needs another look. The step for a phase is always safe to run
    again: creations check for existing objects and deletions tolerate objects
    that are already gone.
    """

    def __init__(
        self,
        *,
        store: ResourceStore,
        metrics: MetricsRecorder,
        config: OperatorConfig,
        clock: Callable[[], float] = time.time,
        phase_clock: PhaseClock | None = None,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self.config = config
        self.clock = clock
        self.phase_clock = phase_clock or PhaseClock()
        self._transitions: dict[Phase, Transition] = {
            Phase.INITIAL: self._create_cloned_pvc,
            Phase.CREATING_CLONED_PVC: self._wait_for_clone_bound,
            Phase.CLONED_PVC_READY: self._create_sync_job,
            Phase.CREATING_POD: self._wait_for_sync_job,
            Phase.CLEANING_UP: self._cleanup_cloned_pvc,
            Phase.COMPLETED: self._terminal,
            Phase.FAILED: self._terminal,
        }
        unhandled = [phase for phase in Phase if phase not in self._transitions]
        if unhandled:
            raise RuntimeError(f"no transition registered for phase(s): {unhandled}")

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        resource = self.store.read_datamover(namespace, name)
        if resource is None:
            logger.info("DataMover %s/%s not found, forgetting it", namespace, name)
            self.forget(namespace, name)
            return ReconcileResult.finished()

        request = DataMoverRequest.from_resource(resource, self.config)
        self.metrics.set_current_phase(request.name, request.namespace, request.phase)
        return self._transitions[request.phase](resource, request)

    def forget(self, namespace: str, name: str) -> None:
        self.metrics.forget_current_phase(name, namespace)
        self.phase_clock.forget(namespace, name)

    # -- phase steps ------------------------------------------------------

    def _create_cloned_pvc(self, resource: dict[str, Any], request: DataMoverRequest) -> ReconcileResult:
        namespace = request.namespace
        logger.info("DataMover %s/%s: creating cloned PVC of '%s'", namespace, request.name, request.source_pvc)
        self.metrics.record_operation(Phase.CREATING_CLONED_PVC, "started", namespace)
        self.phase_clock.start(namespace, request.name, Phase.CREATING_CLONED_PVC)

        source = self.store.read_pvc(namespace, request.source_pvc)
        if source is None:
            self.metrics.record_error("source_pvc_not_found", Phase.CREATING_CLONED_PVC, namespace)
            self.metrics.record_clone("failure", namespace)
            raise SourceClaimNotFoundError(
                f"source PVC '{namespace}/{request.source_pvc}' for DataMover '{request.name}' was not found"
            )

        clone_name = clone_claim_name(request.source_pvc, int(self.clock()))
        clone = build_clone_claim(request=request, source=source, clone_name=clone_name)
        try:
            self.store.create_pvc(namespace, clone)
        except ResourceAlreadyExistsError:
            logger.info("Cloned PVC %s/%s already exists, adopting it", namespace, clone_name)
        except Exception:
            self.metrics.record_error("pvc_creation_failed", Phase.CREATING_CLONED_PVC, namespace)
            self.metrics.record_clone("failure", namespace)
            raise
        else:
            logger.info("Created cloned PVC %s/%s", namespace, clone_name)
        self.metrics.record_clone("started", namespace)

        self._advance(resource, request, Phase.CREATING_CLONED_PVC, restored_pvc_name=clone_name)
        return ReconcileResult.requeue()

    def _wait_for_clone_bound(self, resource: dict[str, Any], request: DataMoverRequest) -> ReconcileResult:
        namespace = request.namespace
        clone = self.store.read_pvc(namespace, request.restored_pvc_name) if request.restored_pvc_name else None
        claim_phase = clone.status.phase if clone is not None and clone.status else None

        if clone is None or claim_phase == CLAIM_LOST:
            logger.error(
                "DataMover %s/%s: cloned PVC '%s' is %s",
                namespace,
                request.name,
                request.restored_pvc_name,
                "lost" if clone is not None else "missing",
            )
            self.metrics.record_error("cloned_pvc_unavailable", Phase.CREATING_CLONED_PVC, namespace)
            self.metrics.record_clone("failure", namespace)
            self.metrics.record_operation(Phase.CREATING_CLONED_PVC, "failure", namespace)
            self.phase_clock.forget(namespace, request.name)
            self._advance(resource, request, Phase.FAILED)
            return ReconcileResult.finished()

        if claim_phase != CLAIM_BOUND:
            logger.info(
                "Waiting for cloned PVC %s/%s to be bound (phase=%s)",
                namespace,
                request.restored_pvc_name,
                claim_phase or "Unknown",
            )
            return ReconcileResult.requeue(CLONE_BOUND_POLL_SECONDS)

        logger.info("Cloned PVC %s/%s is bound", namespace, request.restored_pvc_name)
        self._advance(resource, request, Phase.CLONED_PVC_READY)
        self.metrics.record_clone("success", namespace)
        self._finish_phase(request, Phase.CREATING_CLONED_PVC)
        return ReconcileResult.requeue()

    def _create_sync_job(self, resource: dict[str, Any], request: DataMoverRequest) -> ReconcileResult:
        namespace = request.namespace
        clone_name = request.restored_pvc_name or ""
        job_name = sync_job_name(clone_name)

        existing = self.store.read_job(namespace, job_name)
        if existing is not None:
            self._ensure_owned(existing, request, job_name, Phase.CLONED_PVC_READY)
            logger.info("Sync job %s/%s already exists", namespace, job_name)
        else:
            self.metrics.record_operation(Phase.CREATING_POD, "started", namespace)
            self.phase_clock.start(namespace, request.name, Phase.CREATING_POD)
            try:
                self.store.create_job(namespace, build_sync_job(request=request, clone_name=clone_name))
            except ResourceAlreadyExistsError:
                concurrent = self.store.read_job(namespace, job_name)
                if concurrent is not None:
                    self._ensure_owned(concurrent, request, job_name, Phase.CLONED_PVC_READY)
                logger.info("Sync job %s/%s appeared concurrently, accepting it", namespace, job_name)
            except Exception:
                self.metrics.record_error("job_creation_failed", Phase.CREATING_POD, namespace)
                self.metrics.record_pod_creation("failure", namespace)
                raise
            else:
                logger.info("Created sync job %s/%s", namespace, job_name)
                self.metrics.record_pod_creation("started", namespace)

        self._advance(resource, request, Phase.CREATING_POD)
        return ReconcileResult.requeue()

    def _wait_for_sync_job(self, resource: dict[str, Any], request: DataMoverRequest) -> ReconcileResult:
        namespace = request.namespace
        job_name = sync_job_name(request.restored_pvc_name or "")
        job = self.store.read_job(namespace, job_name)
        if job is None:
            self.metrics.record_error("job_get_failed", Phase.CREATING_POD, namespace)
            raise DependentResourceMissingError(f"sync job '{namespace}/{job_name}' was not found")
        self._ensure_owned(job, request, job_name, Phase.CREATING_POD)

        outcome = job_outcome(job)
        if outcome is JobOutcome.RUNNING:
            status = job.status
            logger.info(
                "Waiting for sync job %s/%s (active=%s succeeded=%s failed=%s)",
                namespace,
                job_name,
                status.active if status else None,
                status.succeeded if status else None,
                status.failed if status else None,
            )
            return ReconcileResult.requeue(SYNC_JOB_POLL_SECONDS)

        if outcome is JobOutcome.FAILED:
            logger.error("Sync job %s/%s exhausted its retries, DataMover %s failed", namespace, job_name, request.name)
            self.metrics.record_error("job_failed", Phase.CREATING_POD, namespace)
            self.metrics.record_pod_creation("failure", namespace)
            self.metrics.record_data_sync("failure", namespace)
            self.metrics.record_operation(Phase.CREATING_POD, "failure", namespace)
            self.phase_clock.forget(namespace, request.name)
            self._advance(resource, request, Phase.FAILED)
            return ReconcileResult.finished()

        next_phase = Phase.CLEANING_UP if request.cleanup_requested else Phase.COMPLETED
        logger.info("Sync job %s/%s succeeded, moving to %s", namespace, job_name, next_phase.value)
        self._advance(resource, request, next_phase)
        self.metrics.record_pod_creation("success", namespace)
        self.metrics.record_data_sync("success", namespace)
        self._finish_phase(request, Phase.CREATING_POD)
        if next_phase is Phase.CLEANING_UP:
            self.metrics.record_operation(Phase.CLEANING_UP, "started", namespace)
            self.phase_clock.start(namespace, request.name, Phase.CLEANING_UP)
            return ReconcileResult.requeue()
        return ReconcileResult.finished()

    def _cleanup_cloned_pvc(self, resource: dict[str, Any], request: DataMoverRequest) -> ReconcileResult:
        namespace = request.namespace
        clone_name = request.restored_pvc_name
        if not clone_name:
            logger.info("DataMover %s/%s has no cloned PVC to clean up", namespace, request.name)
            self._advance(resource, request, Phase.COMPLETED)
            return ReconcileResult.finished()

        if self.store.read_pvc(namespace, clone_name) is None:
            logger.info("Cloned PVC %s/%s already deleted", namespace, clone_name)
            self.metrics.record_cleanup("already_deleted", namespace)
            self._advance(resource, request, Phase.COMPLETED)
            self._finish_phase(request, Phase.CLEANING_UP)
            return ReconcileResult.finished()

        logger.info("Deleting cloned PVC %s/%s", namespace, clone_name)
        try:
            deleted = self.store.delete_pvc(namespace, clone_name)
        except ApiException as error:
            logger.error("Failed to delete cloned PVC %s/%s: %s", namespace, clone_name, error.reason or error)
            self.metrics.record_error("pvc_delete_failed", Phase.CLEANING_UP, namespace)
            self.metrics.record_cleanup("failure", namespace)
            self.metrics.record_operation(Phase.CLEANING_UP, "failure", namespace)
            self.phase_clock.forget(namespace, request.name)
            self._advance(resource, request, Phase.FAILED)
            return ReconcileResult.finished()

        self.metrics.record_cleanup("success" if deleted else "already_deleted", namespace)
        self._advance(resource, request, Phase.COMPLETED)
        self._finish_phase(request, Phase.CLEANING_UP)
        return ReconcileResult.finished()

    def _terminal(self, resource: dict[str, Any], request: DataMoverRequest) -> ReconcileResult:
        logger.debug("DataMover %s/%s is %s, nothing to do", request.namespace, request.name, request.phase.value)
        return ReconcileResult.finished()

    # -- helpers ----------------------------------------------------------

    def _advance(
        self,
        resource: dict[str, Any],
        request: DataMoverRequest,
        phase: Phase,
        *,
        restored_pvc_name: str | None = None,
    ) -> None:
        body = copy.deepcopy(resource)
        status = dict(body.get("status") or {})
        status["phase"] = phase.value
        if restored_pvc_name and not status.get("restoredPvcName"):
            status["restoredPvcName"] = restored_pvc_name
        body["status"] = status

        try:
            self.store.replace_datamover_status(body)
        except Exception:
            self.metrics.record_error("status_update_failed", phase, request.namespace)
            raise
        self.metrics.set_current_phase(request.name, request.namespace, phase)
        logger.info(
            "DataMover %s/%s: %s -> %s",
            request.namespace,
            request.name,
            request.phase.value or "<initial>",
            phase.value,
        )

    def _ensure_owned(self, job: Any, request: DataMoverRequest, job_name: str, phase: Phase) -> None:
        if is_controlled_by(job, kind=KIND_DATAMOVER, name=request.name, uid=request.uid):
            return
        self.metrics.record_error("job_owner_mismatch", phase, request.namespace)
        raise ForeignResourceError(
            f"sync job '{request.namespace}/{job_name}' is not controlled by DataMover "
            f"'{request.name}' (uid {request.uid}), refusing to adopt it"
        )

    def _finish_phase(self, request: DataMoverRequest, phase: Phase) -> None:
        duration = self.phase_clock.stop(request.namespace, request.name, phase)
        if duration is not None:
            self.metrics.record_phase_duration(phase, request.namespace, duration)
        self.metrics.record_operation(phase, "success", request.namespace)
