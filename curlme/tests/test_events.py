from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import patch

from curlme.src.cache import DeletedFinalStateUnknown
from curlme.src.errors import KeyDerivationError
from curlme.src.events import EventKind, EventNormalizer, HandlerEvent, WatchEvent
from curlme.src.kube import ConfigurationObject


class RecordingQueue:
    def __init__(self) -> None:
        self.items: list[Any] = []

    def add(self, item: Any) -> None:
        self.items.append(item)


def test_watch_event_identity_ignores_event_kind_and_namespace() -> None:
    created = WatchEvent("ns/a", EventKind.CREATED, "configmap", "ns")
    deleted = WatchEvent("ns/a", EventKind.DELETED, "configmap", "")

    assert created == deleted
    assert hash(created) == hash(deleted)
    assert created != WatchEvent("ns/a", EventKind.CREATED, "secret", "ns")
    assert created != WatchEvent("ns/b", EventKind.CREATED, "configmap", "ns")


def test_handler_event_status_follows_reason() -> None:
    event = WatchEvent("ns/a", EventKind.DELETED, "configmap", "ns")

    assert HandlerEvent.from_watch_event(event, "created").status == "Normal"
    assert HandlerEvent.from_watch_event(event, "updated").status == "Warning"
    deleted = HandlerEvent.from_watch_event(event, "deleted")
    assert deleted == HandlerEvent(
        name="ns/a", kind="configmap", namespace="ns", reason="deleted", status="Danger"
    )


def test_on_add_queues_created_event() -> None:
    queue = RecordingQueue()
    normalizer = EventNormalizer(queue)

    normalizer.on_add(ConfigurationObject(namespace="default", name="cm"))

    assert len(queue.items) == 1
    event = queue.items[0]
    assert event.key == "default/cm"
    assert event.event_kind is EventKind.CREATED
    assert event.resource_kind == "configmap"


def test_on_update_keys_on_old_object() -> None:
    queue = RecordingQueue()
    normalizer = EventNormalizer(queue)

    normalizer.on_update(
        ConfigurationObject(namespace="default", name="cm", resource_version="1"),
        ConfigurationObject(namespace="default", name="cm", resource_version="2"),
    )

    assert queue.items[0].key == "default/cm"
    assert queue.items[0].event_kind is EventKind.UPDATED
    assert queue.items[0].previous.resource_version == "1"


def test_on_delete_captures_namespace() -> None:
    queue = RecordingQueue()
    normalizer = EventNormalizer(queue)

    normalizer.on_delete(ConfigurationObject(namespace="team-a", name="cm"))

    event = queue.items[0]
    assert event.key == "team-a/cm"
    assert event.event_kind is EventKind.DELETED
    assert event.namespace == "team-a"


def test_on_delete_accepts_tombstone() -> None:
    queue = RecordingQueue()
    normalizer = EventNormalizer(queue)

    normalizer.on_delete(DeletedFinalStateUnknown(key="team-b/gone", obj=None))

    event = queue.items[0]
    assert event.key == "team-b/gone"
    assert event.namespace == "team-b"


def test_key_derivation_failure_is_reported_not_queued() -> None:
    queue = RecordingQueue()
    normalizer = EventNormalizer(queue)

    with patch("curlme.src.events.report_error") as mock_report:
        normalizer.on_add(SimpleNamespace(metadata=SimpleNamespace(name=None, namespace="x")))
        normalizer.on_update(ConfigurationObject(namespace="x", name=""), None)
        normalizer.on_delete(object())

    assert queue.items == []
    assert mock_report.call_count == 3
    for call in mock_report.call_args_list:
        assert isinstance(call.args[0], KeyDerivationError)
    kinds = [call.kwargs["event_kind"] for call in mock_report.call_args_list]
    assert kinds == ["create", "update", "delete"]
