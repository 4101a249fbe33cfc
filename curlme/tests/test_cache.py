from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from curlme.src.cache import (
    ConfigMapInformer,
    DeletedFinalStateUnknown,
    Indexer,
    meta_namespace_key,
    wait_for_cache_sync,
)
from curlme.src.errors import KeyDerivationError
from curlme.src.kube import ConfigurationObject


def make_kube_config_map(
    name: str,
    namespace: str = "default",
    resource_version: str = "1",
    data: dict[str, str] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            annotations={},
            creation_timestamp=None,
            resource_version=resource_version,
        ),
        data=data or {},
    )


class FakeCoreApi:
    def __init__(self, listings: list[Any]) -> None:
        self.listings = list(listings)
        self.list_calls = 0

    def list_namespaced_config_map(self, namespace: str, **kwargs: Any) -> Any:
        self.list_calls += 1
        listing = self.listings.pop(0) if len(self.listings) > 1 else self.listings[0]
        if isinstance(listing, Exception):
            raise listing
        return listing


def listing(*items: SimpleNamespace, resource_version: str = "100") -> SimpleNamespace:
    return SimpleNamespace(
        items=list(items), metadata=SimpleNamespace(resource_version=resource_version)
    )


class Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    def on_add(self, obj: Any) -> None:
        self.calls.append(("add", obj))

    def on_update(self, old: Any, new: Any) -> None:
        self.calls.append(("update", new))

    def on_delete(self, obj: Any) -> None:
        self.calls.append(("delete", obj))


def _informer(core_api: FakeCoreApi) -> tuple[ConfigMapInformer, Recorder]:
    informer = ConfigMapInformer(core_api=core_api, namespace="default")  # type: ignore[arg-type]
    recorder = Recorder()
    informer.add_event_handler(recorder.on_add, recorder.on_update, recorder.on_delete)
    return informer, recorder


def _run_with_streams(informer: ConfigMapInformer, streams: list[Any]) -> MagicMock:
    """Run the informer over scripted watch streams, stopping once they are used up."""
    stop = threading.Event()
    remaining = iter(streams)

    def fake_stream(*args: Any, **kwargs: Any) -> Any:
        try:
            scripted = next(remaining)
        except StopIteration:
            stop.set()
            return iter(())
        if isinstance(scripted, Exception):
            raise scripted
        return iter(scripted)

    watcher = MagicMock()
    watcher.stream.side_effect = fake_stream
    with patch("curlme.src.cache.watch.Watch", return_value=watcher):
        informer.run(stop)
    return watcher


# ---------------------------------------------------------------------------
# Keys and indexer
# ---------------------------------------------------------------------------


def test_meta_namespace_key() -> None:
    assert meta_namespace_key(ConfigurationObject(namespace="ns", name="cm")) == "ns/cm"
    assert meta_namespace_key(ConfigurationObject(namespace="", name="cm")) == "cm"
    assert meta_namespace_key(make_kube_config_map("cm", namespace="ns")) == "ns/cm"
    with pytest.raises(KeyDerivationError):
        meta_namespace_key(ConfigurationObject(namespace="ns", name=""))


def test_indexer_round_trip() -> None:
    indexer = Indexer()
    obj = ConfigurationObject(namespace="ns", name="cm")

    indexer.add(obj)
    assert indexer.get_by_key("ns/cm") == (obj, True)
    assert indexer.list_keys() == ["ns/cm"]

    indexer.delete(obj)
    assert indexer.get_by_key("ns/cm") == (None, False)
    assert indexer.list() == []


def test_indexer_delete_accepts_tombstone() -> None:
    indexer = Indexer()
    indexer.add(ConfigurationObject(namespace="ns", name="cm"))

    indexer.delete(DeletedFinalStateUnknown(key="ns/cm", obj=None))  # type: ignore[arg-type]

    assert indexer.list_keys() == []


# ---------------------------------------------------------------------------
# Informer
# ---------------------------------------------------------------------------


def test_initial_list_populates_cache_and_replays_adds() -> None:
    core_api = FakeCoreApi([listing(make_kube_config_map("a"), make_kube_config_map("b"))])
    informer, recorder = _informer(core_api)

    _run_with_streams(informer, [])

    assert informer.has_synced()
    assert informer.last_sync_resource_version() == "100"
    assert informer.indexer.list_keys() == ["default/a", "default/b"]
    assert [kind for kind, _ in recorder.calls] == ["add", "add"]


def test_watch_events_update_cache_and_notify() -> None:
    core_api = FakeCoreApi([listing(make_kube_config_map("a"))])
    informer, recorder = _informer(core_api)

    watcher = _run_with_streams(
        informer,
        [
            [
                {"type": "ADDED", "object": make_kube_config_map("b", resource_version="101")},
                {
                    "type": "MODIFIED",
                    "object": make_kube_config_map(
                        "a", resource_version="102", data={"joke": "ha"}
                    ),
                },
                {"type": "DELETED", "object": make_kube_config_map("b", resource_version="103")},
            ]
        ],
    )

    assert [kind for kind, _ in recorder.calls] == ["add", "add", "update", "delete"]
    cached, found = informer.indexer.get_by_key("default/a")
    assert found and cached is not None and cached.data == {"joke": "ha"}
    assert informer.indexer.get_by_key("default/b") == (None, False)
    assert informer.last_sync_resource_version() == "103"
    first_call = watcher.stream.call_args_list[0]
    assert first_call.kwargs["resource_version"] == "100"


def test_added_event_for_known_key_is_an_update() -> None:
    core_api = FakeCoreApi([listing(make_kube_config_map("a"))])
    informer, recorder = _informer(core_api)

    _run_with_streams(
        informer,
        [[{"type": "ADDED", "object": make_kube_config_map("a", resource_version="2")}]],
    )

    assert [kind for kind, _ in recorder.calls] == ["add", "update"]


def test_expired_watch_relists_and_emits_differences() -> None:
    core_api = FakeCoreApi(
        [
            listing(
                make_kube_config_map("keep", resource_version="1"),
                make_kube_config_map("change", resource_version="1"),
                make_kube_config_map("gone", resource_version="1"),
            ),
            listing(
                make_kube_config_map("keep", resource_version="1"),
                make_kube_config_map("change", resource_version="5"),
                make_kube_config_map("new", resource_version="6"),
                resource_version="200",
            ),
        ]
    )
    informer, recorder = _informer(core_api)

    _run_with_streams(informer, [ApiException(status=410, reason="Gone")])

    after_sync = recorder.calls[3:]
    kinds = sorted(kind for kind, _ in after_sync)
    assert kinds == ["add", "delete", "update"]
    deleted = next(obj for kind, obj in after_sync if kind == "delete")
    assert isinstance(deleted, DeletedFinalStateUnknown)
    assert deleted.key == "default/gone"
    assert informer.indexer.list_keys() == ["default/change", "default/keep", "default/new"]
    assert informer.last_sync_resource_version() == "200"


def test_error_event_with_410_triggers_relist() -> None:
    core_api = FakeCoreApi([listing(make_kube_config_map("a"))])
    informer, _ = _informer(core_api)

    _run_with_streams(
        informer,
        [[{"type": "ERROR", "object": None, "raw_object": {"code": 410}}]],
    )

    assert core_api.list_calls == 2


def test_forbidden_watch_stops_informer() -> None:
    core_api = FakeCoreApi([listing()])
    informer, _ = _informer(core_api)

    watcher = MagicMock()
    watcher.stream.side_effect = ApiException(status=403, reason="Forbidden")
    with patch("curlme.src.cache.watch.Watch", return_value=watcher):
        informer.run(threading.Event())

    assert watcher.stream.call_count == 1


def test_forbidden_initial_list_never_syncs() -> None:
    core_api = FakeCoreApi([ApiException(status=401, reason="Unauthorized")])
    informer, _ = _informer(core_api)

    informer.run(threading.Event())

    assert not informer.has_synced()


def test_handler_exception_does_not_break_informer() -> None:
    core_api = FakeCoreApi([listing(make_kube_config_map("a"), make_kube_config_map("b"))])
    informer = ConfigMapInformer(core_api=core_api, namespace="default")  # type: ignore[arg-type]
    seen: list[Any] = []

    def flaky_add(obj: Any) -> None:
        seen.append(obj)
        raise RuntimeError("boom")

    informer.add_event_handler(flaky_add, lambda old, new: None, lambda obj: None)

    _run_with_streams(informer, [])

    assert len(seen) == 2
    assert informer.has_synced()


def test_request_stop_interrupts_active_watch() -> None:
    core_api = FakeCoreApi([listing()])
    informer, _ = _informer(core_api)
    started = threading.Event()
    release = threading.Event()

    def blocking_stream(*args: Any, **kwargs: Any) -> Any:
        started.set()
        release.wait(timeout=2)
        return iter(())

    watcher = MagicMock()
    watcher.stream.side_effect = blocking_stream
    watcher.stop.side_effect = release.set

    with patch("curlme.src.cache.watch.Watch", return_value=watcher):
        thread = threading.Thread(target=informer.run, args=(threading.Event(),))
        thread.start()
        assert started.wait(timeout=2)
        informer.request_stop()
        thread.join(timeout=3)

    assert not thread.is_alive()


# ---------------------------------------------------------------------------
# wait_for_cache_sync
# ---------------------------------------------------------------------------


def test_wait_for_cache_sync_returns_true_once_synced() -> None:
    synced = threading.Event()
    threading.Timer(0.05, synced.set).start()

    assert wait_for_cache_sync(threading.Event(), synced.is_set, timeout=2, poll_interval=0.01)


def test_wait_for_cache_sync_times_out() -> None:
    assert not wait_for_cache_sync(threading.Event(), lambda: False, timeout=0.05, poll_interval=0.01)


def test_wait_for_cache_sync_stops_on_shutdown() -> None:
    stop = threading.Event()
    stop.set()

    assert not wait_for_cache_sync(stop, lambda: False, timeout=10)
