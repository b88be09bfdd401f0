from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from annotator.src.errors import PatchError, SecretFetchError

LOGGER = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, NetworkingV1Api]:
    """Return CoreV1 (Secrets) and NetworkingV1 (Ingresses) API clients."""
    return client.CoreV1Api(), client.NetworkingV1Api()


def read_secret(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    timeout_seconds: float | None = None,
) -> Any:
    """Read a Secret by name, raising :class:`SecretFetchError` on any failure.

    A timeout or dropped connection surfaces from urllib3 rather than as an
    ``ApiException``; both are reported the same way.
    """
    try:
        return core_api.read_namespaced_secret(
            name=name,
            namespace=namespace,
            _request_timeout=timeout_seconds,
        )
    except ApiException as exc:
        raise SecretFetchError(
            f"Failed to read Secret {namespace}/{name}: {exc.status} {exc.reason}"
        ) from exc
    except HTTPError as exc:
        raise SecretFetchError(f"Failed to read Secret {namespace}/{name}: {exc}") from exc


def patch_ingress_annotations(
    networking_api: NetworkingV1Api,
    namespace: str,
    ingress_name: str,
    body: dict[str, Any],
    field_manager: str,
    timeout_seconds: float | None = None,
) -> None:
    """Submit a JSON merge patch touching only ``metadata.annotations``.

    The merge-patch content type is forced so the API server does not fall
    back to a strategic merge.  Rejections raise :class:`PatchError`.
    """
    try:
        networking_api.patch_namespaced_ingress(
            name=ingress_name,
            namespace=namespace,
            body=body,
            field_manager=field_manager,
            _content_type=MERGE_PATCH_CONTENT_TYPE,
            _request_timeout=timeout_seconds,
        )
    except ApiException as exc:
        raise PatchError(
            f"Failed to patch Ingress {namespace}/{ingress_name}: {exc.status} {exc.reason}"
        ) from exc
    except HTTPError as exc:
        raise PatchError(f"Failed to patch Ingress {namespace}/{ingress_name}: {exc}") from exc
