from __future__ import annotations

import logging
from typing import Any

from curlme.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class ReconcileError(RuntimeError):
    """Base class for failures raised while turning a watch event into work.

    ``retriable`` tells the reconciliation loop whether the item should go
    back on the queue with backoff or be dropped immediately.
    """

    retriable = False
    category = "reconcile"


class KeyDerivationError(ReconcileError):
    """The ``namespace/name`` key could not be derived from a watched object."""

    category = "key_derivation"


class CacheMiss(ReconcileError):
    """The key is no longer present in the local mirror."""

    category = "cache_miss"


class ObjectNotFound(ReconcileError):
    """The API server reports the object as gone."""

    category = "not_found"


class AnnotationFormatError(ReconcileError, ValueError):
    """The trigger annotation value does not follow ``<key>=<host-or-url>``."""

    category = "annotation_format"


class FetchError(ReconcileError):
    """Remote content could not be retrieved (transport error or non-200)."""

    retriable = True
    category = "fetch"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class StoreError(ReconcileError):
    """A Kubernetes API call against the ConfigMap store failed."""

    retriable = True
    category = "store"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PersistError(StoreError):
    category = "persist"


class ConflictError(PersistError):
    """Optimistic concurrency failure (HTTP 409) on update."""

    category = "conflict"


class RetryCeilingExceeded(ReconcileError):
    category = "retry_ceiling"

    def __init__(self, key: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"giving up on {key} after {attempts} attempts: {last_error}")
        self.key = key
        self.attempts = attempts
        self.last_error = last_error


class CacheSyncTimeout(RuntimeError):
    """The informer did not complete its initial list in time; fatal at startup."""


def report_error(error: BaseException, **context: Any) -> None:
    """Process-wide sink for non-fatal errors.

    Logs ``error`` together with ``context`` (typically ``key`` and
    ``event_kind``) and bumps ``curlme_errors_total``.  Never raises.
    """
    category = getattr(error, "category", "unexpected")
    details = " ".join(f"{name}={value}" for name, value in sorted(context.items()))
    METRICS.errors_total.labels(category=category).inc()
    LOGGER.error("%s: %s %s", type(error).__name__, error, details)
