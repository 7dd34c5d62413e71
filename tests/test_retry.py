from __future__ import annotations

from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from datamover_operator.k8s import ResourceConflictError, ResourceNotFoundError
from datamover_operator.retry import RetriesExhaustedError, update_with_retry


def _conflict() -> ResourceConflictError:
    return ResourceConflictError(operation="update pv", error=ApiException(status=409, reason="Conflict"))


def test_update_with_retry_with_immediate_success_calls_once(no_sleep: list[float]) -> None:
    write = Mock(return_value="updated")

    assert update_with_retry("update pv", write) == "updated"

    write.assert_called_once_with()
    assert no_sleep == []


def test_update_with_retry_with_two_conflicts_succeeds_on_third_attempt(no_sleep: list[float]) -> None:
    write = Mock(side_effect=[_conflict(), _conflict(), "updated"])

    assert update_with_retry("update pv", write) == "updated"

    assert write.call_count == 3
    assert no_sleep == pytest.approx([0.1, 0.2])


def test_update_with_retry_with_persistent_conflict_stops_after_three_attempts(no_sleep: list[float]) -> None:
    write = Mock(side_effect=_conflict())

    with pytest.raises(RetriesExhaustedError, match="after 3 attempts") as caught:
        update_with_retry("update pv", write)

    assert write.call_count == 3
    assert caught.value.attempts == 3
    assert isinstance(caught.value.last_error, ResourceConflictError)
    assert len(no_sleep) == 2


def test_update_with_retry_with_not_found_error_propagates_without_retry(no_sleep: list[float]) -> None:
    write = Mock(side_effect=ResourceNotFoundError(operation="update pv", error=ApiException(status=404)))

    with pytest.raises(ResourceNotFoundError):
        update_with_retry("update pv", write)

    write.assert_called_once_with()
    assert no_sleep == []


def test_update_with_retry_with_custom_attempts_uses_linear_backoff(no_sleep: list[float]) -> None:
    write = Mock(side_effect=_conflict())

    with pytest.raises(RetriesExhaustedError):
        update_with_retry("update pv", write, attempts=4, backoff_seconds=0.5)

    assert write.call_count == 4
    assert no_sleep == pytest.approx([0.5, 1.0, 1.5])


def test_update_with_retry_with_zero_attempts_still_tries_once(no_sleep: list[float]) -> None:
    write = Mock(side_effect=_conflict())

    with pytest.raises(RetriesExhaustedError, match="after 1 attempts") as caught:
        update_with_retry("update pv", write, attempts=0)

    write.assert_called_once_with()
    assert caught.value.attempts == 1
    assert no_sleep == []
