from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from kubernetes.client import CoreV1Api, NetworkingV1Api

from annotator.src.config import ControllerConfig
from annotator.src.errors import MissingFieldError, ReconcileError
from annotator.src.journal import decode_journal
from annotator.src.kube import patch_ingress_annotations, read_secret
from annotator.src.metrics import METRICS
from annotator.src.planner import PatchPlan, plan_patch
from annotator.src.substitution import build_replacements, substitute_annotations


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of one reconcile, returned to the scheduling loop.

    ``requeue_after_seconds`` is ``None`` when the ingress should only be
    revisited on its next watch event.
    """

    namespace: str | None
    name: str | None
    requeue_after_seconds: int | None
    changed_keys: tuple[str, ...] = ()
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def patched(self) -> bool:
        return bool(self.changed_keys)

    @property
    def result(self) -> str:
        if self.failed:
            return "failed"
        if self.requeue_after_seconds is None:
            return "noop"
        return "patched" if self.patched else "unchanged"


def ingress_annotations(ingress: Any) -> dict[str, str]:
    """Extract metadata annotations from an ingress object safely."""
    metadata = getattr(ingress, "metadata", None)
    annotations = getattr(metadata, "annotations", None)
    if not isinstance(annotations, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in annotations.items()
        if isinstance(k, str)
    }


class IngressAnnotationReconciler:
    """Substitutes ``$key$`` placeholders in ingress annotations with Secret values.

    An ingress opts in by naming a Secret in its own namespace through the
    trigger annotation.  Each reconcile reads that Secret, renders every
    templated annotation from its journaled original and patches only the
    annotations whose rendering differs from the live value, together with
    the updated journal in the state annotation.

    Outcomes map onto the scheduling contract:
        * no trigger annotation: no timed revisit;
        * processed, with or without a patch: revisit after ``resync_interval_seconds``;
        * any :class:`ReconcileError`: revisit after ``retry_interval_seconds``.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        networking_api: NetworkingV1Api,
        config: ControllerConfig,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.networking_api = networking_api
        self.config = config
        self.keys = config.keys
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self, ingress: Any) -> ReconcileResult:
        started = time.monotonic()
        try:
            result = self._reconcile(ingress)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
        METRICS.reconciles_total.labels(result=result.result).inc()
        return result

    def _reconcile(self, ingress: Any) -> ReconcileResult:
        metadata = getattr(ingress, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        name = getattr(metadata, "name", None)
        annotations = ingress_annotations(ingress)

        secret_name = annotations.get(self.keys.secret_name)
        if secret_name is None:
            return ReconcileResult(namespace=namespace, name=name, requeue_after_seconds=None)

        try:
            if not namespace or not name:
                raise MissingFieldError(
                    "Ingress snapshot is missing metadata.namespace or metadata.name"
                )
            secret_name = secret_name.strip()
            if not secret_name:
                raise MissingFieldError(
                    f"Ingress {namespace}/{name} has an empty {self.keys.secret_name} annotation"
                )

            secret = read_secret(
                self.core_api,
                namespace=namespace,
                name=secret_name,
                timeout_seconds=self.config.request_timeout_seconds,
            )
            plan = self.apply(namespace, name, annotations, secret)
        except ReconcileError as exc:
            METRICS.errors_total.labels(reason=exc.reason).inc()
            self.logger.error(
                "Reconcile of ingress %s/%s failed; retrying in %ss: %s",
                namespace,
                name,
                self.config.retry_interval_seconds,
                exc,
            )
            return ReconcileResult(
                namespace=namespace,
                name=name,
                requeue_after_seconds=self.config.retry_interval_seconds,
                error=str(exc),
            )

        changed_keys: tuple[str, ...] = ()
        if plan is not None:
            changed_keys = tuple(sorted(k for k in plan.annotations if k != self.keys.state))
        return ReconcileResult(
            namespace=namespace,
            name=name,
            requeue_after_seconds=self.config.resync_interval_seconds,
            changed_keys=changed_keys,
        )

    def apply(
        self,
        namespace: str,
        name: str,
        annotations: Mapping[str, str],
        secret: Any,
    ) -> PatchPlan | None:
        """Render the annotations against *secret* and patch the ingress if needed.

        Returns the submitted :class:`PatchPlan`, or ``None`` when every
        annotation already matches its rendering and no API call was made.
        """
        replacements = build_replacements(secret)
        journal = decode_journal(annotations.get(self.keys.state), self.keys.reserved)
        result = substitute_annotations(annotations, journal, replacements, self.keys.reserved)

        plan = plan_patch(result, self.keys.state)
        if plan is None:
            self.logger.debug("Ingress %s/%s annotations already up to date", namespace, name)
            return None

        patch_ingress_annotations(
            self.networking_api,
            namespace=namespace,
            ingress_name=name,
            body=plan.body,
            field_manager=self.config.field_manager,
            timeout_seconds=self.config.request_timeout_seconds,
        )
        METRICS.patches_total.inc()
        self.logger.info(
            "Patched ingress %s/%s annotations: %s",
            namespace,
            name,
            ", ".join(sorted(result.changed)),
        )
        return plan
