from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"
DEFAULT_ANNOTATION_PREFIX = "kirillorlov.pro"
DEFAULT_FIELD_MANAGER = "annotations-from-secret"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class AnnotationKeys:
    """Reserved annotation keys derived from the configured domain prefix.

    Attributes:
        secret_name: Owner-set trigger naming the Secret in the ingress namespace.
        state:       Controller-owned journal of pre-substitution values.
    """

    secret_name: str
    state: str

    @classmethod
    def for_prefix(cls, prefix: str) -> AnnotationKeys:
        return cls(
            secret_name=f"{prefix}/annotationsFromSecretName",
            state=f"{prefix}/annotationsFromSecretState",
        )

    @property
    def reserved(self) -> frozenset[str]:
        """Keys never inspected for placeholders nor recorded in the journal."""
        return frozenset({self.secret_name, self.state, LAST_APPLIED_ANNOTATION})


@dataclass(frozen=True)
class ControllerConfig:
    """Immutable controller configuration loaded at startup."""

    keys: AnnotationKeys
    field_manager: str = DEFAULT_FIELD_MANAGER
    watch_namespace: str | None = None
    resync_interval_seconds: int = 300
    retry_interval_seconds: int = 60
    request_timeout_seconds: int = 30
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> ControllerConfig:
    """Build a :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``ANNOTATION_PREFIX``        domain prefix of the reserved keys (``kirillorlov.pro``).
        ``FIELD_MANAGER``            field manager used for patches (``annotations-from-secret``).
        ``WATCH_NAMESPACE``          restrict the ingress watch; empty watches all namespaces.
        ``RESYNC_INTERVAL_SECONDS``  revisit delay after a processed ingress (``300``).
        ``RETRY_INTERVAL_SECONDS``   revisit delay after a failed reconcile (``60``).
        ``REQUEST_TIMEOUT_SECONDS``  bound on every Kubernetes API call (``30``).
        ``HEALTH_PORT``              health and metrics port (``8080``).
    """
    values = env if env is not None else os.environ

    prefix = values.get("ANNOTATION_PREFIX", DEFAULT_ANNOTATION_PREFIX).strip().rstrip("/")
    if not prefix or "/" in prefix:
        raise ConfigError(
            f"ANNOTATION_PREFIX must be a non-empty DNS prefix without '/', got: {prefix!r}"
        )

    field_manager = values.get("FIELD_MANAGER", DEFAULT_FIELD_MANAGER).strip()
    if not field_manager:
        raise ConfigError("FIELD_MANAGER must be a non-empty string")

    watch_namespace = values.get("WATCH_NAMESPACE", "").strip() or None

    return ControllerConfig(
        keys=AnnotationKeys.for_prefix(prefix),
        field_manager=field_manager,
        watch_namespace=watch_namespace,
        resync_interval_seconds=env_int("RESYNC_INTERVAL_SECONDS", 300, minimum=1, env=values),
        retry_interval_seconds=env_int("RETRY_INTERVAL_SECONDS", 60, minimum=1, env=values),
        request_timeout_seconds=env_int("REQUEST_TIMEOUT_SECONDS", 30, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
