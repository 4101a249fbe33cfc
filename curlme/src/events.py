from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from curlme.src.cache import DeletedFinalStateUnknown, deletion_handling_key, meta_namespace_key
from curlme.src.errors import KeyDerivationError, report_error

LOGGER = logging.getLogger(__name__)

RESOURCE_KIND_CONFIGMAP = "configmap"


class EventKind(str, Enum):
    CREATED = "create"
    UPDATED = "update"
    DELETED = "delete"


@dataclass(frozen=True)
class WatchEvent:
    """A unit of work: "the object behind ``key`` needs reconciling".

    Only ``key`` and ``resource_kind`` take part in equality, so the work
    queue collapses repeated events for the same object into one item.
    ``previous`` holds the pre-update snapshot of an update notification.
    """

    key: str
    event_kind: EventKind = field(compare=False)
    resource_kind: str
    namespace: str = field(default="", compare=False)
    previous: Any = field(default=None, compare=False, repr=False)


_STATUS_BY_REASON = {
    "created": "Normal",
    "updated": "Warning",
    "deleted": "Danger",
}


@dataclass(frozen=True)
class HandlerEvent:
    """Event record handed to :class:`~curlme.src.handlers.EventHandler` implementations."""

    name: str
    kind: str
    namespace: str = ""
    reason: str = ""
    status: str = ""

    @classmethod
    def from_watch_event(cls, event: WatchEvent, reason: str) -> HandlerEvent:
        return cls(
            name=event.key,
            kind=event.resource_kind,
            namespace=event.namespace,
            reason=reason,
            status=_STATUS_BY_REASON.get(reason, ""),
        )


class EventSink(Protocol):
    def add(self, item: Any) -> None: ...


class EventNormalizer:
    """Turns informer notifications into :class:`WatchEvent` items on a queue.

    Each callback derives the object key; when that fails the notification is
    reported and dropped so a malformed object cannot break the informer.
    """

    def __init__(
        self,
        queue: EventSink,
        resource_kind: str = RESOURCE_KIND_CONFIGMAP,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.resource_kind = resource_kind
        self.logger = logger or LOGGER

    def _enqueue(
        self, event_kind: EventKind, key: str, namespace: str = "", previous: Any = None
    ) -> None:
        event = WatchEvent(
            key=key,
            event_kind=event_kind,
            resource_kind=self.resource_kind,
            namespace=namespace,
            previous=previous,
        )
        self.logger.debug("Queueing %s event for %s", event_kind.value, key)
        self.queue.add(event)

    def on_add(self, obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except KeyDerivationError as exc:
            report_error(exc, event_kind=EventKind.CREATED.value)
            return
        self._enqueue(EventKind.CREATED, key)

    def on_update(self, old: Any, new: Any) -> None:
        try:
            key = meta_namespace_key(old)
        except KeyDerivationError as exc:
            report_error(exc, event_kind=EventKind.UPDATED.value)
            return
        self._enqueue(EventKind.UPDATED, key, previous=old)

    def on_delete(self, obj: Any) -> None:
        try:
            key = deletion_handling_key(obj)
        except KeyDerivationError as exc:
            report_error(exc, event_kind=EventKind.DELETED.value)
            return
        # The object is about to leave the cache, so capture its namespace now.
        if isinstance(obj, DeletedFinalStateUnknown):
            namespace = getattr(obj.obj, "namespace", "") or (
                key.split("/")[0] if "/" in key else ""
            )
        else:
            namespace = getattr(obj, "namespace", "") or ""
        self._enqueue(EventKind.DELETED, key, namespace=namespace)
