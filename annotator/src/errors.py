from __future__ import annotations


class ReconcileError(RuntimeError):
    """Resource-scoped failure that aborts one reconcile and schedules a short retry.

    ``reason`` is a stable, low-cardinality label used for metrics.
    """

    reason = "error"


class MissingFieldError(ReconcileError):
    """Raised when an ingress snapshot lacks a field the reconcile depends on."""

    reason = "missing_field"


class SecretFetchError(ReconcileError):
    """Raised when the referenced Secret cannot be read."""

    reason = "secret_fetch"


class SecretDecodeError(ReconcileError):
    """Raised when a Secret ``data`` value is not valid base64-encoded UTF-8."""

    reason = "secret_decode"


class PatchError(ReconcileError):
    """Raised when the annotation patch is rejected or cannot be delivered."""

    reason = "patch"
