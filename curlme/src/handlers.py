from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from curlme.src.annotation import (
    CURL_ANNOTATION,
    parse_annotation,
    split_meta_namespace_key,
    strip_namespace_from_name,
)
from curlme.src.errors import AnnotationFormatError, ObjectNotFound
from curlme.src.events import HandlerEvent
from curlme.src.fetcher import DEFAULT_FETCH_TIMEOUT_SECONDS, fetch_site_data
from curlme.src.kube import ConfigMapStore, ConfigurationObject
from curlme.src.metrics import METRICS


class EventHandler(ABC):
    """Capability set the reconciliation loop dispatches to.

    ``obj`` is the snapshot the local cache held when the event was processed.
    Updates also receive ``old``, the snapshot from before the change, when
    the informer supplied one.
    Implementations signal transient failures by raising a retriable
    :class:`~curlme.src.errors.ReconcileError`; the loop then requeues the
    event with backoff.
    """

    @abstractmethod
    def object_created(self, event: HandlerEvent, obj: ConfigurationObject | None) -> None: ...

    @abstractmethod
    def object_updated(
        self,
        event: HandlerEvent,
        obj: ConfigurationObject | None,
        old: ConfigurationObject | None = None,
    ) -> None: ...

    @abstractmethod
    def object_deleted(self, event: HandlerEvent) -> None: ...


class LoggingHandler(EventHandler):
    """Logs every event and does nothing else."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def object_created(self, event: HandlerEvent, obj: ConfigurationObject | None) -> None:
        self.logger.info("Received created event: %s", event)

    def object_updated(
        self,
        event: HandlerEvent,
        obj: ConfigurationObject | None,
        old: ConfigurationObject | None = None,
    ) -> None:
        self.logger.info(
            "Received updated event: %s (resourceVersion %s -> %s)",
            event,
            getattr(old, "resource_version", None),
            getattr(obj, "resource_version", None),
        )

    def object_deleted(self, event: HandlerEvent) -> None:
        self.logger.info("Received deleted event: %s", event)


def has_curl_annotation(obj: ConfigurationObject) -> bool:
    """Return True if *obj* carries a non-empty trigger annotation."""
    return bool(obj.annotations.get(CURL_ANNOTATION))


class WebsiteFetchHandler(EventHandler):
    """Fills ConfigMap data from the site named in ``x-k8s.io/curl-me-that``.

    On create and update the ConfigMap is re-read from the API server so the
    decision is never made on a stale cache entry.  If it carries the
    annotation, e.g. ``joke=curl-a-joke.herokuapp.com``, the site is fetched
    and its body stored under the ``joke`` data key.

    A malformed annotation is logged and left alone, since retrying cannot fix
    it.  Fetch and update failures propagate so the work queue retries them.
    """

    def __init__(
        self,
        store: ConfigMapStore,
        fetch_timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def object_created(self, event: HandlerEvent, obj: ConfigurationObject | None) -> None:
        self.logger.info("Received created event for %s", event.name)
        self._reconcile(event)

    def object_updated(
        self,
        event: HandlerEvent,
        obj: ConfigurationObject | None,
        old: ConfigurationObject | None = None,
    ) -> None:
        self.logger.info("Received updated event for %s", event.name)
        self._reconcile(event)

    def object_deleted(self, event: HandlerEvent) -> None:
        self.logger.info("Received deleted event for %s", event.name)

    def _reconcile(self, event: HandlerEvent) -> ConfigurationObject | None:
        namespace, _ = split_meta_namespace_key(event.name)
        namespace = namespace or event.namespace
        name = strip_namespace_from_name(event.name)

        try:
            config_map = self.store.get(namespace, name)
        except ObjectNotFound:
            self.logger.info("ConfigMap %s/%s no longer exists; nothing to do", namespace, name)
            return None

        return self.process_config_map(config_map, event)

    def process_config_map(
        self, config_map: ConfigurationObject, event: HandlerEvent
    ) -> ConfigurationObject | None:
        """Fetch the annotated site and store its content; return the persisted snapshot."""
        if not has_curl_annotation(config_map):
            return None

        annotation = config_map.annotations[CURL_ANNOTATION]
        try:
            request = parse_annotation(annotation)
        except AnnotationFormatError as exc:
            self.logger.error(
                "Ignoring ConfigMap %s/%s with malformed %s annotation (event=%s): %s",
                config_map.namespace,
                config_map.name,
                CURL_ANNOTATION,
                event.reason,
                exc,
            )
            return None

        response = fetch_site_data(request, timeout=self.fetch_timeout_seconds)

        if config_map.data.get(response.key) == response.value:
            self.logger.info(
                "ConfigMap %s/%s already holds current content for key %s",
                config_map.namespace,
                config_map.name,
                response.key,
            )
            return config_map

        updated = self.store.update(config_map.with_data_entry(response.key, response.value))
        METRICS.enrichments_total.inc()
        self.logger.info(
            "Stored content from %s in ConfigMap %s/%s under key %s",
            request.from_site,
            config_map.namespace,
            config_map.name,
            response.key,
        )
        return updated
