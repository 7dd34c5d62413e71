from __future__ import annotations

from datetime import UTC, datetime
import logging
from typing import Any, Callable

from kubernetes import client

from .config import OperatorConfig
from .constants import (
    ANNOTATION_CLEANUP_IN_PROGRESS,
    ANNOTATION_POPULATED,
    ANNOTATION_POPULATED_AT,
    ANNOTATION_POPULATED_BY,
    ANNOTATION_POPULATING,
    ANNOTATION_PRIME_PVC,
    ANNOTATION_TRUE,
    API_GROUP,
    CLAIM_BOUND,
    CLAIM_PENDING,
    HANDOFF_POLL_SECONDS,
    KIND_POPULATOR,
    POPULATION_JOB_POLL_SECONDS,
    POPULATION_JOB_RETRY_SECONDS,
    POPULATOR_MISSING_POLL_SECONDS,
    PRIME_BOUND_POLL_SECONDS,
    PRIME_TERMINATING_POLL_SECONDS,
    REBIND_VERIFY_SECONDS,
)
from .k8s import ResourceAlreadyExistsError, ResourceStore, is_terminating
from .manifests import (
    JobOutcome,
    build_population_job,
    build_prime_claim,
    is_controlled_by,
    job_outcome,
    population_job_name,
    prime_claim_name,
)
from .metrics import MetricsRecorder
from .models import (
    DependentResourceMissingError,
    ForeignResourceError,
    PopulationState,
    PopulatorRequest,
    ReconcileResult,
)
from .retry import update_with_retry

logger = logging.getLogger(__name__)


def populator_reference(claim: Any) -> str | None:
    """Name of the DataMoverPopulator a claim's dataSourceRef points at, if any."""
    spec = getattr(claim, "spec", None)
    reference = getattr(spec, "data_source_ref", None) if spec is not None else None
    if reference is None:
        return None
    if reference.api_group != API_GROUP or reference.kind != KIND_POPULATOR:
        return None
    return reference.name or None


class PopulatorReconciler:
    """Fills a target claim through a temporary prime claim.

    The prime claim is provisioned normally, a population job writes into it,
    and its volume is then handed to the target claim by pointing the target
    at the volume and releasing the volume's claimRef. Progress lives in the
    target claim's annotations, so a restarted operator resumes from the first
    sub-step that has not happened yet.
    """

    def __init__(
        self,
        *,
        store: ResourceStore,
        metrics: MetricsRecorder,
        config: OperatorConfig,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.metrics = metrics
        self.config = config
        self.now = now or (lambda: datetime.now(tz=UTC))

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        target = self.store.read_pvc(namespace, name)
        if target is None:
            logger.info("PVC %s/%s not found, likely deleted", namespace, name)
            return ReconcileResult.finished()

        populator_name = populator_reference(target)
        if populator_name is None:
            return ReconcileResult.finished()

        state = PopulationState.from_annotations(target.metadata.annotations)
        resource = self.store.read_populator(namespace, populator_name)
        if resource is None:
            if state is PopulationState.POPULATED or _claim_phase(target) == CLAIM_BOUND:
                logger.info("PVC %s/%s is already populated, ignoring missing populator %s", namespace, name, populator_name)
                return ReconcileResult.finished()
            logger.info("DataMoverPopulator %s/%s not found, will retry", namespace, populator_name)
            return ReconcileResult.requeue(POPULATOR_MISSING_POLL_SECONDS)
        populator = PopulatorRequest.from_resource(resource, self.config)

        prime = self.store.read_pvc(namespace, prime_claim_name(name))

        if state is PopulationState.POPULATED:
            if prime is None:
                logger.debug("PVC %s/%s already populated and cleanup complete", namespace, name)
                return ReconcileResult.finished()
            logger.info("PVC %s/%s is populated but its prime claim still exists, finishing cleanup", namespace, name)
            return self._hand_off(target)

        if state is PopulationState.HANDING_OFF:
            logger.info("Resuming volume hand-off for PVC %s/%s", namespace, name)
            return self._hand_off(target)

        if prime is None:
            if state is PopulationState.POPULATING:
                logger.warning("PVC %s/%s is marked populating but its prime claim is gone", namespace, name)
                return ReconcileResult.requeue(PRIME_TERMINATING_POLL_SECONDS)
            self._create_prime_claim(target, populator)
            return ReconcileResult.requeue(PRIME_BOUND_POLL_SECONDS)

        if is_terminating(prime):
            logger.info("Prime PVC %s/%s is being deleted, waiting", namespace, prime.metadata.name)
            return ReconcileResult.requeue(PRIME_TERMINATING_POLL_SECONDS)

        if _claim_phase(prime) != CLAIM_BOUND:
            logger.info("Prime PVC %s/%s not yet bound (phase=%s)", namespace, prime.metadata.name, _claim_phase(prime))
            return ReconcileResult.requeue(PRIME_BOUND_POLL_SECONDS)

        return self._drive_population_job(target, prime, populator)

    # -- population -------------------------------------------------------

    def _create_prime_claim(self, target: client.V1PersistentVolumeClaim, populator: PopulatorRequest) -> None:
        namespace = target.metadata.namespace
        prime = build_prime_claim(target=target, populator=populator)
        logger.info("Creating prime PVC %s/%s for population", namespace, prime.metadata.name)
        try:
            self.store.create_pvc(namespace, prime)
        except ResourceAlreadyExistsError:
            logger.info("Prime PVC %s/%s already exists", namespace, prime.metadata.name)
            return
        except Exception:
            self.metrics.record_error("prime_pvc_creation_failed", "population", namespace)
            raise
        self.metrics.record_population("prime_claim", "started", namespace)

    def _drive_population_job(
        self,
        target: client.V1PersistentVolumeClaim,
        prime: client.V1PersistentVolumeClaim,
        populator: PopulatorRequest,
    ) -> ReconcileResult:
        namespace = target.metadata.namespace
        job_name = population_job_name(prime.metadata.name)
        job = self.store.read_job(namespace, job_name)
        if job is not None and not _is_population_job_for(job, prime.metadata.name, prime):
            self.metrics.record_error("job_owner_mismatch", "population", namespace)
            raise ForeignResourceError(
                f"job '{namespace}/{job_name}' is not controlled by prime PVC '{prime.metadata.name}' "
                f"(uid {prime.metadata.uid}), refusing to use it for PVC '{target.metadata.name}'"
            )

        if job is None:
            self._create_population_job(prime, populator)
            return ReconcileResult.requeue(POPULATION_JOB_POLL_SECONDS)

        if is_terminating(job):
            logger.info("Population job %s/%s is being deleted, waiting", namespace, job_name)
            return ReconcileResult.requeue(PRIME_TERMINATING_POLL_SECONDS)

        outcome = job_outcome(job)
        if outcome is JobOutcome.RUNNING:
            logger.info("Population job %s/%s is still running", namespace, job_name)
            return ReconcileResult.requeue(POPULATION_JOB_POLL_SECONDS)

        if outcome is JobOutcome.FAILED:
            logger.warning("Population job %s/%s failed, deleting it to retry", namespace, job_name)
            self.metrics.record_population("job", "failure", namespace)
            self.metrics.record_error("population_job_failed", "population", namespace)
            self.store.delete_job(namespace, job_name)
            return ReconcileResult.requeue(POPULATION_JOB_RETRY_SECONDS)

        logger.info("Population job %s/%s completed successfully", namespace, job_name)
        self.metrics.record_population("job", "success", namespace)
        target, prime = self._mark_populating(target, prime, populator)

        if _claim_phase(target) == CLAIM_PENDING and _claim_phase(prime) == CLAIM_BOUND:
            return self._hand_off(target, prime=prime)

        logger.warning(
            "PVC %s/%s is %s, skipping volume hand-off; prime PVC %s and job %s are left in place",
            namespace,
            target.metadata.name,
            _claim_phase(target),
            prime.metadata.name,
            job_name,
        )
        return ReconcileResult.finished()

    def _create_population_job(self, prime: client.V1PersistentVolumeClaim, populator: PopulatorRequest) -> None:
        namespace = prime.metadata.namespace
        secret = self.store.read_secret(namespace, populator.secret_name)
        if secret is None:
            self.metrics.record_error("secret_not_found", "population", namespace)
            raise DependentResourceMissingError(
                f"storage credentials secret '{namespace}/{populator.secret_name}' for "
                f"DataMoverPopulator '{populator.name}' was not found"
            )

        job = build_population_job(prime=prime, populator=populator, secret_keys=(secret.data or {}).keys())
        try:
            self.store.create_job(namespace, job)
        except ResourceAlreadyExistsError:
            logger.info("Population job %s/%s already exists", namespace, job.metadata.name)
            return
        except Exception:
            self.metrics.record_error("population_job_creation_failed", "population", namespace)
            raise
        logger.info("Created population job %s/%s", namespace, job.metadata.name)
        self.metrics.record_population("job", "started", namespace)

    def _mark_populating(
        self,
        target: client.V1PersistentVolumeClaim,
        prime: client.V1PersistentVolumeClaim,
        populator: PopulatorRequest,
    ) -> tuple[client.V1PersistentVolumeClaim, client.V1PersistentVolumeClaim]:
        populated_at = self.now().replace(microsecond=0).isoformat()

        prime_annotations = prime.metadata.annotations or {}
        if ANNOTATION_POPULATED not in prime_annotations:
            prime.metadata.annotations = {
                **prime_annotations,
                ANNOTATION_POPULATED: ANNOTATION_TRUE,
                ANNOTATION_POPULATED_BY: populator.name,
                ANNOTATION_POPULATED_AT: populated_at,
            }
            prime = self.store.replace_pvc(prime)
            logger.info("Prime PVC %s/%s marked as populated", prime.metadata.namespace, prime.metadata.name)

        target_annotations = target.metadata.annotations or {}
        if ANNOTATION_POPULATING not in target_annotations:
            target.metadata.annotations = {
                **target_annotations,
                ANNOTATION_POPULATING: ANNOTATION_TRUE,
                ANNOTATION_POPULATED_BY: populator.name,
                ANNOTATION_POPULATED_AT: populated_at,
                ANNOTATION_PRIME_PVC: prime.metadata.name,
            }
            target = self.store.replace_pvc(target)
            logger.info("PVC %s/%s marked as populating", target.metadata.namespace, target.metadata.name)

        return target, prime

    # -- hand-off ---------------------------------------------------------

    def _hand_off(
        self,
        target: client.V1PersistentVolumeClaim,
        *,
        prime: client.V1PersistentVolumeClaim | None = None,
    ) -> ReconcileResult:
        namespace = target.metadata.namespace
        target_name = target.metadata.name
        prime_name = prime_claim_name(target_name)
        state = PopulationState.from_annotations(target.metadata.annotations)

        if state in {PopulationState.POPULATING, PopulationState.PENDING}:
            if prime is None or not prime.spec.volume_name:
                raise DependentResourceMissingError(f"prime PVC '{namespace}/{prime_name}' has no bound volume")
            logger.info(
                "Transferring volume %s from prime PVC %s to PVC %s/%s",
                prime.spec.volume_name,
                prime_name,
                namespace,
                target_name,
            )
            target.spec.volume_name = prime.spec.volume_name
            target.metadata.annotations = {
                **(target.metadata.annotations or {}),
                ANNOTATION_CLEANUP_IN_PROGRESS: ANNOTATION_TRUE,
            }
            target = self.store.replace_pvc(target)
            self.metrics.record_population("handoff", "started", namespace)

        volume_name = target.spec.volume_name

        prime = self.store.read_pvc(namespace, prime_name)
        job_name = population_job_name(prime_name)
        job = self.store.read_job(namespace, job_name)
        if job is not None and not _is_population_job_for(job, prime_name, prime):
            logger.warning(
                "Job %s/%s is not controlled by prime PVC %s, leaving it alone",
                namespace,
                job_name,
                prime_name,
            )
        elif job is not None:
            if is_terminating(job):
                logger.info("Population job %s/%s is already being deleted, waiting", namespace, job_name)
            else:
                logger.info("Deleting population job %s/%s to release the prime PVC", namespace, job_name)
                self.store.delete_job(namespace, job_name, propagation_policy="Background")
            return ReconcileResult.requeue(HANDOFF_POLL_SECONDS)

        if prime is not None and not is_terminating(prime):
            logger.info("Deleting prime PVC %s/%s", namespace, prime_name)
            self.store.delete_pvc(namespace, prime_name)

        if volume_name:
            update_with_retry(
                f"clear claimRef of PersistentVolume '{volume_name}'",
                lambda: self._release_volume(volume_name, namespace=namespace, target_name=target_name),
            )

        if prime is not None and self.store.read_pvc(namespace, prime_name) is not None:
            logger.info("Waiting for prime PVC %s/%s to disappear", namespace, prime_name)
            return ReconcileResult.requeue(HANDOFF_POLL_SECONDS)

        if state is not PopulationState.POPULATED:
            update_with_retry(
                f"mark PVC '{namespace}/{target_name}' populated",
                lambda: self._mark_populated(namespace, target_name),
            )
            self.metrics.record_population("handoff", "success", namespace)
            logger.info("PVC %s/%s is populated, volume hand-off complete", namespace, target_name)

        return ReconcileResult.requeue(REBIND_VERIFY_SECONDS)

    def _release_volume(self, volume_name: str, *, namespace: str, target_name: str) -> None:
        volume = self.store.read_pv(volume_name)
        if volume is None:
            logger.warning("PersistentVolume %s no longer exists, nothing to release", volume_name)
            return

        claim_ref = volume.spec.claim_ref
        if claim_ref is None:
            return
        if claim_ref.name == target_name and claim_ref.namespace == namespace:
            logger.debug("PersistentVolume %s already references PVC %s/%s", volume_name, namespace, target_name)
            return

        volume.spec.claim_ref = None
        self.store.replace_pv(volume)
        logger.info("Cleared claimRef of PersistentVolume %s so PVC %s/%s can bind it", volume_name, namespace, target_name)

    def _mark_populated(self, namespace: str, name: str) -> None:
        claim = self.store.read_pvc(namespace, name)
        if claim is None:
            raise DependentResourceMissingError(f"PVC '{namespace}/{name}' disappeared during volume hand-off")

        annotations = dict(claim.metadata.annotations or {})
        annotations.pop(ANNOTATION_POPULATING, None)
        annotations.pop(ANNOTATION_CLEANUP_IN_PROGRESS, None)
        annotations[ANNOTATION_POPULATED] = ANNOTATION_TRUE
        claim.metadata.annotations = annotations
        self.store.replace_pvc(claim)


def _is_population_job_for(job: Any, prime_name: str, prime: Any | None) -> bool:
    uid = prime.metadata.uid if prime is not None else None
    return is_controlled_by(job, kind="PersistentVolumeClaim", name=prime_name, uid=uid)


def _claim_phase(claim: Any) -> str | None:
    status = getattr(claim, "status", None)
    return getattr(status, "phase", None) if status is not None else None
