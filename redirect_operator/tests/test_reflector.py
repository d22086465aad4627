import threading
import time
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from redirect_operator.internal.domain.models import ObjectKey
from redirect_operator.internal.kube.client import RedirectWatchSource
from redirect_operator.internal.store.reflector import Reflector, Store
from redirect_operator.tests.factories import make_redirect, redirect_obj


class FakeSource:
    def __init__(self, lists, watches):
        self.lists = list(lists)
        self.watches = list(watches)
        self.list_calls = 0
        self.watch_versions = []

    def list(self):
        self.list_calls += 1
        return self.lists.pop(0)

    def watch(self, resource_version, timeout_seconds):
        self.watch_versions.append(resource_version)
        return self.watches.pop(0)()


def test_store_snapshot_is_not_affected_by_later_writes():
    store = Store()
    store.replace([make_redirect(name="a")])

    before = store.snapshot()
    store.apply_event('ADDED', make_redirect(name="b"))

    assert list(before.objects) == [ObjectKey("default", "a")]
    assert len(store) == 2


def test_host_conflict_resolves_to_first_by_namespace_and_name():
    store = Store()
    store.replace([
        make_redirect(namespace="zeta", name="a", hosts=["shared.example"], uri="https://z.example"),
        make_redirect(namespace="alpha", name="b", hosts=["shared.example"], uri="https://a.example"),
        make_redirect(namespace="alpha", name="c", hosts=["shared.example"], uri="https://c.example"),
    ])

    winner = store.find_by_host("shared.example")

    assert winner.key() == ObjectKey("alpha", "b")
    assert store.find(lambda r: r.claims_host("shared.example")) == winner
    assert store.find_by_host("other.example") is None


def test_deleted_event_removes_object():
    store = Store()
    redirect = make_redirect()
    store.apply_event('ADDED', redirect)

    store.apply_event('DELETED', redirect)

    assert store.get(redirect.key()) is None
    assert store.find_by_host("example.com") is None


def test_relist_notifies_removed_and_present_keys():
    # Setup
    source = FakeSource(lists=[([redirect_obj(name="b")], "20")], watches=[])
    store = Store()
    store.replace([make_redirect(name="a")])
    reflector = Reflector(source, store)
    notified = []
    reflector.subscribe(notified.append)

    reflector.relist()

    # Verify
    assert notified == [ObjectKey("default", "a"), ObjectKey("default", "b")]
    assert store.keys() == [ObjectKey("default", "b")]
    assert reflector.resource_version == "20"
    assert reflector.ready.is_set()


def test_handle_event_tracks_resource_version():
    reflector = Reflector(FakeSource([], []))
    reflector.handle_event({'type': 'ADDED', 'object': redirect_obj(resource_version="7")})
    reflector.handle_event({'type': 'BOOKMARK', 'object': {'metadata': {'resourceVersion': "9"}}})

    assert reflector.resource_version == "9"
    assert len(reflector.store) == 1


def test_malformed_object_is_skipped():
    reflector = Reflector(FakeSource([], []))
    broken = redirect_obj()
    del broken['spec']['to']

    reflector.handle_event({'type': 'ADDED', 'object': broken})

    assert len(reflector.store) == 0


def test_error_event_raises_api_exception():
    reflector = Reflector(FakeSource([], []))

    with pytest.raises(ApiException) as excinfo:
        reflector.handle_event({'type': 'ERROR', 'object': {'code': 410, 'reason': 'Expired'}})

    assert excinfo.value.status == 410


def test_expired_resource_version_triggers_relist():
    # Setup
    reflector = None

    def first_watch():
        yield {'type': 'ADDED', 'object': redirect_obj(name="b", resource_version="11")}
        raise ApiException(status=410, reason="Gone")

    def second_watch():
        reflector.stop_event.set()
        return iter(())

    source = FakeSource(
        lists=[([redirect_obj(name="a", resource_version="10")], "10"), ([redirect_obj(name="c")], "30")],
        watches=[first_watch, second_watch],
    )
    reflector = Reflector(source)

    reflector.run()

    # Verify
    assert source.list_calls == 2
    assert source.watch_versions == ["10", "30"]
    assert reflector.store.keys() == [ObjectKey("default", "c")]


def test_deleted_event_with_unparseable_object_still_removes():
    # Setup
    reflector = Reflector(FakeSource([], []))
    notified = []
    reflector.subscribe(notified.append)
    reflector.handle_event({'type': 'ADDED', 'object': redirect_obj(hosts=["old.example"])})
    broken = redirect_obj(hosts=["old.example"], resource_version="3")
    del broken['spec']['to']

    reflector.handle_event({'type': 'DELETED', 'object': broken})

    # Verify
    assert reflector.store.keys() == []
    assert reflector.store.find_by_host("old.example") is None
    assert notified == [ObjectKey("default", "example"), ObjectKey("default", "example")]
    assert reflector.resource_version == "3"


def test_modified_into_unparseable_object_drops_stale_copy():
    reflector = Reflector(FakeSource([], []))
    notified = []
    reflector.handle_event({'type': 'ADDED', 'object': redirect_obj(hosts=["old.example"])})
    reflector.subscribe(notified.append)
    broken = redirect_obj(hosts=["old.example"])
    del broken['spec']['to']

    reflector.handle_event({'type': 'MODIFIED', 'object': broken})

    assert reflector.store.find_by_host("old.example") is None
    assert notified == [ObjectKey("default", "example")]


def test_stop_interrupts_blocked_watch():
    # Setup
    class BlockingSource:
        def __init__(self):
            self.closed = threading.Event()

        def list(self):
            return [], "1"

        def watch(self, resource_version, timeout_seconds):
            return self._stream()

        def _stream(self):
            # Blocks like a watch waiting for its next line until the connection is closed
            self.closed.wait()
            raise ConnectionError("response closed")
            yield

        def stop(self):
            self.closed.set()

    reflector = Reflector(BlockingSource()).start()
    assert reflector.ready.wait(timeout=5)

    started = time.monotonic()
    reflector.stop(timeout=5)

    # Verify
    assert not reflector._thread.is_alive()
    assert time.monotonic() - started < 2


def test_stopping_source_closes_watch_response():
    source = RedirectWatchSource(MagicMock())
    active = MagicMock()
    source._active_watch = active

    source.stop()

    active.stop.assert_called_once()
    active._resp.close.assert_called_once()
