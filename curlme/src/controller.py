from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime

from curlme.src.cache import ConfigMapInformer, wait_for_cache_sync
from curlme.src.config import ControllerConfig
from curlme.src.errors import (
    CacheMiss,
    CacheSyncTimeout,
    ReconcileError,
    RetryCeilingExceeded,
    report_error,
)
from curlme.src.events import EventKind, EventNormalizer, HandlerEvent, WatchEvent
from curlme.src.handlers import EventHandler
from curlme.src.kube import ConfigurationObject
from curlme.src.metrics import METRICS
from curlme.src.workqueue import RateLimitingQueue, default_controller_rate_limiter

DEFAULT_MAX_RETRIES = 5


def utc_now() -> datetime:
    return datetime.now(UTC)


class Controller:
    """Reconciliation loop between the ConfigMap informer and an event handler.

    The informer feeds :class:`EventNormalizer`, which queues one
    :class:`WatchEvent` per changed ConfigMap.  Worker threads pull events,
    resolve them against the informer's indexer and dispatch to the handler.

    Per item:
        * Created events are only dispatched for ConfigMaps created at or after
          controller start, so the initial list does not replay existing
          objects as new ones.
        * Updated events are always dispatched, unless ``suppress_stale_updates``
          is set, in which case they follow the same start-time rule.
        * Deleted events are dispatched without a snapshot.
        * A Created/Updated event whose key is gone from the cache is reported
          and dropped; the matching delete is already queued.
        * Retriable failures are requeued with backoff until ``max_retries``
          requeues have been used, then the item is dropped and reported.
    """

    def __init__(
        self,
        informer: ConfigMapInformer,
        handler: EventHandler,
        queue: RateLimitingQueue | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        workers: int = 1,
        cache_sync_timeout_seconds: float = 60.0,
        suppress_stale_updates: bool = False,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.informer = informer
        self.handler = handler
        self.queue = queue or RateLimitingQueue(default_controller_rate_limiter())
        self.max_retries = max_retries
        self.workers = workers
        self.cache_sync_timeout_seconds = cache_sync_timeout_seconds
        self.suppress_stale_updates = suppress_stale_updates
        self.logger = logger or logging.getLogger(__name__)
        # API server timestamps have whole-second resolution.
        self.server_start_time = now_fn().replace(microsecond=0)
        self.ready = threading.Event()
        self._external_stop = threading.Event()

        self.normalizer = EventNormalizer(self.queue, logger=self.logger)
        informer.add_event_handler(
            on_add=self.normalizer.on_add,
            on_update=self.normalizer.on_update,
            on_delete=self.normalizer.on_delete,
        )

    def has_synced(self) -> bool:
        return self.informer.has_synced()

    def last_sync_resource_version(self) -> str | None:
        return self.informer.last_sync_resource_version()

    def request_stop(self) -> None:
        self._external_stop.set()

    def _created_after_start(self, obj: ConfigurationObject | None) -> bool:
        if obj is None or obj.creation_time is None:
            return False
        created = obj.creation_time
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        return created >= self.server_start_time

    def process_item(self, event: WatchEvent) -> None:
        """Resolve *event* against the cache and dispatch it to the handler."""
        obj, found = self.informer.indexer.get_by_key(event.key)
        if not found and event.event_kind is not EventKind.DELETED:
            raise CacheMiss(f"object with key {event.key} is no longer in the cache")

        if event.event_kind is EventKind.CREATED:
            if not self._created_after_start(obj):
                self.logger.debug("Skipping create of pre-existing object %s", event.key)
                return
            handler_event = HandlerEvent.from_watch_event(event, "created")
            self.handler.object_created(handler_event, obj)
            self.logger.info("Object create handled: %s", handler_event)
        elif event.event_kind is EventKind.UPDATED:
            if self.suppress_stale_updates and not self._created_after_start(obj):
                self.logger.debug("Skipping update of pre-existing object %s", event.key)
                return
            handler_event = HandlerEvent.from_watch_event(event, "updated")
            self.handler.object_updated(handler_event, obj, old=event.previous)
            self.logger.info("Object update handled: %s", handler_event)
        else:
            handler_event = HandlerEvent.from_watch_event(event, "deleted")
            self.handler.object_deleted(handler_event)
            self.logger.info("Object delete handled: %s", handler_event)

    def _handle_error(self, event: WatchEvent, error: Exception) -> None:
        kind = event.event_kind.value
        if isinstance(error, ReconcileError) and not error.retriable:
            self.queue.forget(event)
            METRICS.reconcile_total.labels(event_kind=kind, result="dropped").inc()
            report_error(error, key=event.key, event_kind=kind)
            return

        requeues = self.queue.num_requeues(event)
        if requeues < self.max_retries:
            self.logger.error(
                "Error processing %s (event=%s, will retry): %s", event.key, kind, error
            )
            METRICS.reconcile_total.labels(event_kind=kind, result="retry").inc()
            METRICS.retries_total.inc()
            self.queue.add_rate_limited(event)
            return

        self.logger.error("Error processing %s (event=%s, giving up): %s", event.key, kind, error)
        self.queue.forget(event)
        METRICS.reconcile_total.labels(event_kind=kind, result="dropped").inc()
        METRICS.dropped_total.inc()
        report_error(
            RetryCeilingExceeded(event.key, requeues + 1, error),
            key=event.key,
            event_kind=kind,
        )

    def process_next_item(self) -> bool:
        """Handle one queued event; return False once the queue has shut down."""
        event, shutting_down = self.queue.get()
        if shutting_down:
            return False

        try:
            self.process_item(event)
        except Exception as exc:
            self._handle_error(event, exc)
        else:
            self.queue.forget(event)
            METRICS.reconcile_total.labels(
                event_kind=event.event_kind.value, result="success"
            ).inc()
        finally:
            self.queue.done(event)
        return True

    def run_worker(self) -> None:
        while self.process_next_item():
            pass

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Start the informer and workers, block until shutdown, then drain.

        Raises :class:`CacheSyncTimeout` when the informer fails to complete
        its initial list within ``cache_sync_timeout_seconds``.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.logger.info("Starting controller")

        informer_thread = threading.Thread(
            target=self.informer.run, args=(stop,), name="informer", daemon=True
        )
        informer_thread.start()

        worker_threads: list[threading.Thread] = []
        try:
            if not wait_for_cache_sync(stop, self.has_synced, self.cache_sync_timeout_seconds):
                if stop.is_set():
                    return
                raise CacheSyncTimeout("Timed out waiting for caches to sync")

            self.ready.set()
            self.logger.info(
                "Caches synced at resourceVersion %s; starting %d worker(s)",
                self.last_sync_resource_version(),
                self.workers,
            )
            for index in range(self.workers):
                thread = threading.Thread(
                    target=self.run_worker, name=f"worker-{index}", daemon=True
                )
                thread.start()
                worker_threads.append(thread)

            while not stop.is_set() and not self._external_stop.is_set():
                stop.wait(timeout=1.0)
        finally:
            self.ready.clear()
            self.queue.shut_down()
            self.informer.request_stop()
            for thread in worker_threads:
                thread.join()
            self.logger.info("Controller stopped")


def build_controller(
    config: ControllerConfig,
    informer: ConfigMapInformer,
    handler: EventHandler,
) -> Controller:
    """Construct a :class:`Controller` wired with the configured retry policy."""
    queue = RateLimitingQueue(
        default_controller_rate_limiter(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        )
    )
    return Controller(
        informer=informer,
        handler=handler,
        queue=queue,
        max_retries=config.max_retries,
        workers=config.workers,
        cache_sync_timeout_seconds=config.cache_sync_timeout_seconds,
        suppress_stale_updates=config.suppress_stale_updates,
    )
