from __future__ import annotations

from dataclasses import dataclass
import os

from .constants import DEFAULT_IMAGE_REPOSITORY, DEFAULT_IMAGE_TAG, DEFAULT_PULL_POLICY


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class OperatorConfig:
    default_image: str = os.getenv("DATAMOVER_DEFAULT_IMAGE", DEFAULT_IMAGE_REPOSITORY)
    default_image_tag: str = os.getenv("DATAMOVER_DEFAULT_IMAGE_TAG", DEFAULT_IMAGE_TAG)
    default_pull_policy: str = os.getenv("DATAMOVER_DEFAULT_PULL_POLICY", DEFAULT_PULL_POLICY)
    metrics_port: int = int(os.getenv("DATAMOVER_METRICS_PORT", "8080"))
    log_level: str = os.getenv("DATAMOVER_LOG_LEVEL", "INFO")
    kubeconfig_path: str | None = _env_optional("DATAMOVER_KUBECONFIG")
    kube_context: str | None = _env_optional("DATAMOVER_KUBE_CONTEXT")
    in_cluster: bool = _env_flag("DATAMOVER_IN_CLUSTER")
    watch_namespace: str | None = _env_optional("DATAMOVER_WATCH_NAMESPACE")
