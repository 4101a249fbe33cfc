from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from curlme.src.errors import KeyDerivationError
from curlme.src.kube import ConfigurationObject
from curlme.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeletedFinalStateUnknown:
    """Tombstone for an object whose deletion was inferred from a relist.

    ``obj`` is the last state the cache held, which may be stale.
    """

    key: str
    obj: Any


def meta_namespace_key(obj: Any) -> str:
    """Return ``namespace/name`` for *obj*, or just ``name`` when it has no namespace."""
    metadata = getattr(obj, "metadata", obj)
    name = getattr(metadata, "name", None)
    if not name:
        raise KeyDerivationError(f"object has no name: {obj!r}")
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return str(name)


def deletion_handling_key(obj: Any) -> str:
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    return meta_namespace_key(obj)


class Indexer:
    """Thread-safe keyed mirror of the watched collection.

    Only the informer writes to it; the reconciliation loop reads.
    """

    def __init__(self) -> None:
        self._items: dict[str, ConfigurationObject] = {}
        self._lock = threading.Lock()

    def add(self, obj: ConfigurationObject) -> None:
        key = meta_namespace_key(obj)
        with self._lock:
            self._items[key] = obj

    update = add

    def delete(self, obj: ConfigurationObject) -> None:
        key = deletion_handling_key(obj)
        with self._lock:
            self._items.pop(key, None)

    def replace(self, items: dict[str, ConfigurationObject]) -> None:
        with self._lock:
            self._items = dict(items)

    def get_by_key(self, key: str) -> tuple[ConfigurationObject | None, bool]:
        with self._lock:
            obj = self._items.get(key)
        return obj, obj is not None

    def list_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._items)

    def list(self) -> list[ConfigurationObject]:
        with self._lock:
            return list(self._items.values())


@dataclass(frozen=True)
class ResourceEventHandlers:
    on_add: Callable[[Any], None]
    on_update: Callable[[Any, Any], None]
    on_delete: Callable[[Any], None]


class ConfigMapInformer:
    """Keeps an :class:`Indexer` in sync with the ConfigMaps of one namespace.

    The informer lists all ConfigMaps once, replays them as add notifications,
    then follows a watch stream from the list's ``resourceVersion``.  There is
    no periodic resync.

    ``410 Gone`` means the resourceVersion was compacted away; the informer
    relists and emits add/update/delete notifications for whatever changed
    while it was not watching.  Deletions found this way are delivered as
    :class:`DeletedFinalStateUnknown` tombstones.  Other watch errors reconnect
    with jittered exponential backoff capped at 30 s, and ``401``/``403`` stop
    the informer since retrying cannot fix RBAC.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or LOGGER
        self.indexer = Indexer()
        self._handlers: list[ResourceEventHandlers] = []
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._last_sync_resource_version: str | None = None
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: Callable[[Any], None],
        on_update: Callable[[Any, Any], None],
        on_delete: Callable[[Any], None],
    ) -> None:
        self._handlers.append(
            ResourceEventHandlers(on_add=on_add, on_update=on_update, on_delete=on_delete)
        )

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def last_sync_resource_version(self) -> str | None:
        return self._last_sync_resource_version

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _notify(self, callback_name: str, *args: Any) -> None:
        for handlers in self._handlers:
            try:
                getattr(handlers, callback_name)(*args)
            except Exception:
                self.logger.exception("Event handler %s failed", callback_name)

    def _list_and_replace(self) -> None:
        """List every ConfigMap and bring the indexer in line with the result."""
        listing = self.core_api.list_namespaced_config_map(namespace=self.namespace)
        fresh: dict[str, ConfigurationObject] = {}
        for item in getattr(listing, "items", None) or []:
            obj = ConfigurationObject.from_kube(item)
            try:
                fresh[meta_namespace_key(obj)] = obj
            except KeyDerivationError:
                self.logger.warning("Skipping listed ConfigMap without a name")

        previous = {key: self.indexer.get_by_key(key)[0] for key in self.indexer.list_keys()}
        self.indexer.replace(fresh)

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._notify("on_add", obj)
            elif old.resource_version != obj.resource_version:
                self._notify("on_update", old, obj)
        for key, old in previous.items():
            if key not in fresh:
                self._notify("on_delete", DeletedFinalStateUnknown(key=key, obj=old))

        self._last_sync_resource_version = getattr(
            getattr(listing, "metadata", None), "resource_version", None
        )

    def _handle_watch_event(self, event_type: str, raw: Any) -> None:
        if event_type == "ERROR":
            status = raw.get("code") if isinstance(raw, dict) else getattr(raw, "code", None)
            raise ApiException(status=status or 500, reason="watch error event")

        resource_version = getattr(getattr(raw, "metadata", None), "resource_version", None)
        if resource_version:
            self._last_sync_resource_version = resource_version
        if event_type == "BOOKMARK":
            return

        obj = ConfigurationObject.from_kube(raw)
        try:
            key = meta_namespace_key(obj)
        except KeyDerivationError:
            self.logger.warning("Ignoring %s watch event for ConfigMap without a name", event_type)
            return
        old, found = self.indexer.get_by_key(key)

        if event_type in {"ADDED", "MODIFIED"}:
            self.indexer.update(obj)
            if found:
                self._notify("on_update", old, obj)
            else:
                self._notify("on_add", obj)
        elif event_type == "DELETED":
            self.indexer.delete(obj)
            self._notify("on_delete", obj)
        else:
            self.logger.debug("Ignoring watch event of type %s", event_type)

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List, then watch until stopped."""
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                self._list_and_replace()
                self._synced.set()
                self.logger.info(
                    "Informer synced %d ConfigMap(s) at resourceVersion %s",
                    len(self.indexer.list_keys()),
                    self._last_sync_resource_version,
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during initial list (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    return
                self.logger.exception("Initial Kubernetes ConfigMap list failed")
                METRICS.watch_errors_total.inc()
            except Exception:
                self.logger.exception("Unexpected error during initial ConfigMap list")
                METRICS.watch_errors_total.inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.core_api.list_namespaced_config_map,
                    namespace=self.namespace,
                    resource_version=self._last_sync_resource_version,
                    timeout_seconds=self.watch_timeout_seconds,
                    allow_watch_bookmarks=True,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    raw = event.get("raw_object") if event.get("type") == "ERROR" else None
                    self._handle_watch_event(
                        str(event.get("type", "")),
                        raw if raw is not None else event.get("object"),
                    )
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, re-listing")
                    try:
                        self._list_and_replace()
                    except ApiException:
                        self.logger.exception("Failed to re-list after 410")
                        METRICS.watch_errors_total.inc()
                        self._last_sync_resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch denied (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        exc.status,
                    )
                    METRICS.watch_errors_total.inc()
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


def wait_for_cache_sync(
    stop_event: threading.Event,
    has_synced: Callable[[], bool],
    timeout: float,
    poll_interval: float = 0.1,
) -> bool:
    """Poll *has_synced* until it returns True, *stop_event* is set, or *timeout* passes."""
    deadline = time.monotonic() + timeout
    while not has_synced():
        if stop_event.is_set():
            return False
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        stop_event.wait(timeout=min(poll_interval, remaining))
    return True
