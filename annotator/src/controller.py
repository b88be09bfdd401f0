from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api, NetworkingV1Api
from urllib3.exceptions import HTTPError

from annotator.src.config import ControllerConfig
from annotator.src.metrics import METRICS
from annotator.src.reconciler import IngressAnnotationReconciler, ReconcileResult

IngressKey = tuple[str, str]


class IngressAnnotationController:
    """Watches Ingresses and drives :class:`IngressAnnotationReconciler`.

    The loop lists ingresses (cluster-wide, or in one namespace), reconciles
    every listed object, then streams watch events from the list's
    ``resourceVersion``.  ``ADDED`` and ``MODIFIED`` events reconcile the
    delivered snapshot; the reconcile outcome decides whether and when the
    ingress is revisited without an event.

    Everything runs on one thread, so two reconciles of the same ingress
    never overlap.

    Key internal state:
        ``_pending``
            Maps ``(namespace, name)`` to the ``time.monotonic()`` due-at
            timestamp of its next timed revisit.  A newer outcome for the
            same key replaces the older schedule.
    """

    def __init__(
        self,
        networking_api: NetworkingV1Api,
        reconciler: IngressAnnotationReconciler,
        watch_namespace: str | None = None,
        logger: logging.Logger | None = None,
        monotonic_fn: Callable[[], float] = time.monotonic,
    ) -> None:
        self.networking_api = networking_api
        self.reconciler = reconciler
        self.watch_namespace = watch_namespace
        self.logger = logger or logging.getLogger(__name__)
        self.monotonic_fn = monotonic_fn
        self.request_timeout_seconds = reconciler.config.request_timeout_seconds
        self.retry_interval_seconds = reconciler.config.retry_interval_seconds

        self._pending: dict[IngressKey, float] = {}
        METRICS.pending_reconciles.set(0)

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @staticmethod
    def _ingress_key(ingress: Any) -> IngressKey | None:
        metadata = getattr(ingress, "metadata", None)
        namespace = getattr(metadata, "namespace", None)
        name = getattr(metadata, "name", None)
        if not namespace or not name:
            return None
        return namespace, name

    def _list_function(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        """Return the list call and its scoping kwargs, shared by list and watch."""
        if self.watch_namespace:
            return self.networking_api.list_namespaced_ingress, {"namespace": self.watch_namespace}
        return self.networking_api.list_ingress_for_all_namespaces, {}

    def _list_ingresses(self) -> Any:
        list_fn, kwargs = self._list_function()
        return list_fn(**kwargs)

    def _set_pending(self, key: IngressKey, due_at: float | None) -> None:
        if due_at is None:
            self._pending.pop(key, None)
        else:
            self._pending[key] = due_at
        METRICS.pending_reconciles.set(len(self._pending))

    def _schedule(self, key: IngressKey, result: ReconcileResult, now_monotonic: float) -> None:
        """Record when *key* must be revisited according to *result*."""
        if result.requeue_after_seconds is None:
            self._set_pending(key, None)
            return
        self._set_pending(key, now_monotonic + result.requeue_after_seconds)

    def _reconcile_and_schedule(self, ingress: Any) -> ReconcileResult:
        result = self.reconciler.reconcile(ingress)
        key = self._ingress_key(ingress)
        if key is not None:
            self._schedule(key, result, self.monotonic_fn())
        return result

    def handle_ingress_event(self, event_type: str, ingress: Any) -> ReconcileResult | None:
        """Process a single Ingress watch event.

        Returns the :class:`ReconcileResult` for ``ADDED``/``MODIFIED``
        events, or ``None`` when the event was ignored.
        """
        if event_type == "DELETED":
            key = self._ingress_key(ingress)
            if key is not None:
                self._set_pending(key, None)
            return None

        if event_type not in {"ADDED", "MODIFIED"}:
            return None

        if getattr(ingress, "metadata", None) is None:
            return None

        return self._reconcile_and_schedule(ingress)

    def _revisit(self, key: IngressKey) -> ReconcileResult | None:
        """Re-read one ingress whose revisit is due and reconcile the fresh snapshot."""
        namespace, name = key
        try:
            ingress = self.networking_api.read_namespaced_ingress(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            )
        except ApiException as exc:
            if exc.status == 404:
                self.logger.info(
                    "Ingress %s/%s no longer exists; dropping revisit", namespace, name
                )
                self._set_pending(key, None)
                return None
            self.logger.warning(
                "Failed to read ingress %s/%s for revisit (status=%s); retrying in %ss",
                namespace,
                name,
                exc.status,
                self.retry_interval_seconds,
            )
            METRICS.errors_total.labels(reason="ingress_fetch").inc()
            self._set_pending(key, self.monotonic_fn() + self.retry_interval_seconds)
            return None
        except HTTPError:
            self.logger.warning(
                "Connection error reading ingress %s/%s for revisit; retrying in %ss",
                namespace,
                name,
                self.retry_interval_seconds,
            )
            METRICS.errors_total.labels(reason="ingress_fetch").inc()
            self._set_pending(key, self.monotonic_fn() + self.retry_interval_seconds)
            return None

        return self._reconcile_and_schedule(ingress)

    def _drain_due_reconciles(self, now_monotonic: float, stop: threading.Event) -> None:
        """Revisit every ingress whose due-at timestamp is at or before *now_monotonic*."""
        due = sorted(
            (due_at, key) for key, due_at in self._pending.items() if due_at <= now_monotonic
        )
        for _, key in due:
            if self._should_stop(stop):
                return
            self._pending.pop(key, None)
            self._revisit(key)
        METRICS.pending_reconciles.set(len(self._pending))

    def _reconcile_listing(self, listing: Any) -> None:
        """Reconcile every ingress in a full listing (startup and ``410`` re-list)."""
        items = getattr(listing, "items", None) or []
        listed: set[IngressKey] = set()
        for ingress in items:
            key = self._ingress_key(ingress)
            if key is not None:
                listed.add(key)
            self._reconcile_and_schedule(ingress)

        for key in [key for key in self._pending if key not in listed]:
            self._set_pending(key, None)

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the next watch timeout in seconds, shortened for due revisits."""
        if not self._pending:
            return 30

        nearest_due = min(self._pending.values())
        remaining = max(1.0, nearest_due - now_monotonic)
        return min(30, max(1, math.ceil(remaining)))

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: list-then-watch Ingresses until shutdown.

        1. Retries the initial list with jittered exponential backoff so
           transient API startup failures do not crash-loop the controller.
        2. Reconciles every listed ingress, then opens a watch from the
           list's ``resourceVersion``.
        3. On ``410 Gone``, re-lists and reconciles everything again.
        4. On transient errors, backs off with jitter (capped at 30 s).
        5. Revisits due ingresses on every loop iteration and after every
           event, shortening the watch timeout so revisits fire on time.

        ``401`` / ``403`` responses are treated as RBAC misconfiguration
        and terminate the loop immediately.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                initial = self._list_ingresses()
                resource_version = getattr(
                    getattr(initial, "metadata", None), "resource_version", None
                )
                self._reconcile_listing(initial)
                self.ready.set()
                self.logger.info("Starting ingress watch from resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial ingress list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Initial Kubernetes ingress list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial ingress list")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0
        list_fn, list_kwargs = self._list_function()

        while not self._should_stop(stop):
            self._drain_due_reconciles(self.monotonic_fn(), stop)
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                timeout_seconds = self._next_watch_timeout_seconds(self.monotonic_fn())
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_fn,
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                    **list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_ingress_event(event_type=str(event.get("type", "")), ingress=obj)
                    self._drain_due_reconciles(self.monotonic_fn(), stop)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: the resourceVersion was compacted away; re-list
                # and reconcile from a fresh snapshot.
                if exc.status == 410:
                    self.logger.warning("Ingress watch resource version expired, re-listing")
                    try:
                        fresh = self._list_ingresses()
                        resource_version = getattr(
                            getattr(fresh, "metadata", None), "resource_version", None
                        )
                        self._reconcile_listing(fresh)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied during 410 re-list (status=%s). "
                                "Check controller RBAC and service account permissions.",
                                relist_exc.status,
                            )
                            self.ready.clear()
                            return
                        self.logger.exception("Failed to re-list ingresses after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
                    self.ready.clear()
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()


def build_controller(
    core_api: CoreV1Api,
    networking_api: NetworkingV1Api,
    config: ControllerConfig,
) -> IngressAnnotationController:
    """Wire a reconciler and watch loop from a :class:`ControllerConfig`."""
    reconciler = IngressAnnotationReconciler(
        core_api=core_api,
        networking_api=networking_api,
        config=config,
    )
    return IngressAnnotationController(
        networking_api=networking_api,
        reconciler=reconciler,
        watch_namespace=config.watch_namespace,
    )
