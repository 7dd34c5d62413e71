from __future__ import annotations

import importlib

import pytest

import datamover_operator.config as config_module


def test_operator_config_with_environment_overrides_reads_datamover_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATAMOVER_DEFAULT_IMAGE", "registry.local/rclone")
    monkeypatch.setenv("DATAMOVER_METRICS_PORT", "9102")
    monkeypatch.setenv("DATAMOVER_IN_CLUSTER", "yes")
    monkeypatch.setenv("DATAMOVER_WATCH_NAMESPACE", "  ")

    reloaded = importlib.reload(config_module)
    try:
        config = reloaded.OperatorConfig()

        assert config.default_image == "registry.local/rclone"
        assert config.metrics_port == 9102
        assert config.in_cluster is True
        assert config.watch_namespace is None
    finally:
        monkeypatch.undo()
        importlib.reload(config_module)


def test_operator_config_with_explicit_values_is_frozen() -> None:
    config = config_module.OperatorConfig(default_image_tag="v2")

    assert config.default_image_tag == "v2"
    with pytest.raises(AttributeError):
        config.default_image_tag = "v3"  # type: ignore[misc]
