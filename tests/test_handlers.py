from __future__ import annotations

import typing
from unittest.mock import Mock

import kopf
import pytest

from datamover_operator.datamover import DataMoverReconciler
from datamover_operator.handlers import drive, references_populator
from datamover_operator.models import ReconcileResult, SpecValidationError
from datamover_operator.populator import PopulatorReconciler


class _Stopped:
    """Minimal stand-in for kopf's daemon stop flag."""

    def __init__(self, *, stop_after: int | None = None) -> None:
        self.waits: list[float | None] = []
        self._stop_after = stop_after

    def __bool__(self) -> bool:
        return self._stop_after is not None and len(self.waits) >= self._stop_after

    def wait(self, timeout: float | None = None) -> bool:
        self.waits.append(timeout)
        return bool(self)


def test_drive_with_requeues_waits_between_invocations_until_done() -> None:
    reconciler = Mock()
    reconciler.reconcile.side_effect = [
        ReconcileResult.requeue(),
        ReconcileResult.requeue(15),
        ReconcileResult.finished(),
    ]
    stopped = _Stopped()

    drive(reconciler, namespace="apps", name="backup", stopped=stopped)

    assert reconciler.reconcile.call_count == 3
    reconciler.reconcile.assert_called_with("apps", "backup")
    assert stopped.waits == [0.0, 15.0]


def test_drive_with_stop_requested_exits_without_finishing() -> None:
    reconciler = Mock()
    reconciler.reconcile.return_value = ReconcileResult.requeue(60)
    stopped = _Stopped(stop_after=1)

    drive(reconciler, namespace="apps", name="backup", stopped=stopped)

    reconciler.reconcile.assert_called_once_with("apps", "backup")


def test_drive_with_validation_error_raises_permanent_error() -> None:
    reconciler = Mock()
    reconciler.reconcile.side_effect = SpecValidationError("DataMover apps/backup is missing sourcePvc")

    with pytest.raises(kopf.PermanentError, match="missing sourcePvc"):
        drive(reconciler, namespace="apps", name="backup", stopped=_Stopped())


def test_drive_with_transient_error_propagates_for_daemon_backoff() -> None:
    reconciler = Mock()
    reconciler.reconcile.side_effect = RuntimeError("apiserver unavailable")

    with pytest.raises(RuntimeError, match="apiserver unavailable"):
        drive(reconciler, namespace="apps", name="backup", stopped=_Stopped())


def test_references_populator_with_matching_data_source_ref_returns_true() -> None:
    spec = {"dataSourceRef": {"apiGroup": "datamover.a-cup-of.coffee", "kind": "DataMoverPopulator", "name": "restore"}}

    assert references_populator(spec=spec)


def test_references_populator_with_other_data_sources_returns_false() -> None:
    snapshot = {"dataSourceRef": {"apiGroup": "snapshot.storage.k8s.io", "kind": "VolumeSnapshot", "name": "snap"}}

    assert not references_populator(spec=snapshot)
    assert not references_populator(spec={})
    assert not references_populator(spec=None)


def test_drive_with_resolved_annotations_accepts_both_reconcilers() -> None:
    hints = typing.get_type_hints(drive)

    assert set(typing.get_args(hints["reconciler"])) == {DataMoverReconciler, PopulatorReconciler}
    assert hints["stopped"] is kopf.DaemonStopped
