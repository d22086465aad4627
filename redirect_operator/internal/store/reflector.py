import logging
import random
import threading
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Tuple

from kubernetes.client import ApiException
from pydantic import ValidationError

from redirect_operator.internal.domain.models import ObjectKey, Redirect

logger = logging.getLogger(__name__)

WATCH_TIMEOUT_SECONDS = 290
MAX_BACKOFF_SECONDS = 30


class WatchSource(Protocol):
    def list(self) -> Tuple[List[Dict[str, Any]], Optional[str]]: ...

    def watch(self, resource_version: Optional[str], timeout_seconds: int) -> Iterator[Dict[str, Any]]: ...


class Snapshot:
    """Immutable view of every known Redirect at one instant.

    Objects are ordered by (namespace, name); when several Redirects claim
    the same host, the first one in that order wins.
    """

    __slots__ = ('objects', 'ordered', 'hosts')

    def __init__(self, objects: Dict[ObjectKey, Redirect]):
        self.objects: Mapping[ObjectKey, Redirect] = MappingProxyType(dict(objects))
        self.ordered: Tuple[Redirect, ...] = tuple(objects[key] for key in sorted(objects))
        hosts: Dict[str, Redirect] = {}
        for redirect in self.ordered:
            for host in redirect.spec.hosts:
                hosts.setdefault(host, redirect)
        self.hosts: Mapping[str, Redirect] = MappingProxyType(hosts)


class Store:
    """Read-optimized index over watched Redirects.

    Readers grab the current snapshot with a single attribute read and never
    take a lock. The reflector is the only writer and replaces the snapshot
    wholesale.
    """

    def __init__(self):
        self._snapshot = Snapshot({})

    def snapshot(self) -> Snapshot:
        return self._snapshot

    def find(self, predicate: Callable[[Redirect], bool]) -> Optional[Redirect]:
        for redirect in self._snapshot.ordered:
            if predicate(redirect):
                return redirect
        return None

    def find_by_host(self, host: str) -> Optional[Redirect]:
        return self._snapshot.hosts.get(host)

    def get(self, key: ObjectKey) -> Optional[Redirect]:
        return self._snapshot.objects.get(key)

    def state(self) -> List[Redirect]:
        return list(self._snapshot.ordered)

    def keys(self) -> List[ObjectKey]:
        return [redirect.key() for redirect in self._snapshot.ordered]

    def __len__(self) -> int:
        return len(self._snapshot.objects)

    def apply_event(self, event_type: str, redirect: Redirect):
        if event_type == 'DELETED':
            self.remove(redirect.key())
            return
        objects = dict(self._snapshot.objects)
        objects[redirect.key()] = redirect
        self._snapshot = Snapshot(objects)

    def remove(self, key: ObjectKey):
        if key not in self._snapshot.objects:
            return
        objects = dict(self._snapshot.objects)
        del objects[key]
        self._snapshot = Snapshot(objects)

    def replace(self, redirects: Iterable[Redirect]):
        self._snapshot = Snapshot({redirect.key(): redirect for redirect in redirects})


def _object_key(obj: Dict[str, Any]) -> Optional[ObjectKey]:
    metadata = obj.get('metadata') or {}
    if not metadata.get('name'):
        return None
    return ObjectKey(metadata.get('namespace') or "", metadata['name'])


def _parse(obj: Dict[str, Any]) -> Optional[Redirect]:
    try:
        return Redirect.from_dict(obj)
    except ValidationError as e:
        metadata = obj.get('metadata') or {}
        logger.warning(f"Ignoring malformed Redirect {metadata.get('namespace')}/{metadata.get('name')}: {e}")
        return None


class Reflector:
    """Keeps a Store in sync with the cluster through list+watch.

    Runs on a daemon thread. Watches resume from the last seen
    resourceVersion; an expired version (410 Gone) triggers a full relist.
    Subscribers get the key of every object touched by an event or relist.
    """

    def __init__(self, source: WatchSource, store: Optional[Store] = None,
                 watch_timeout_seconds: int = WATCH_TIMEOUT_SECONDS):
        self.source = source
        self.store = store or Store()
        self.watch_timeout_seconds = watch_timeout_seconds
        self.resource_version: Optional[str] = None
        self.ready = threading.Event()
        self.stop_event = threading.Event()
        self._subscribers: List[Callable[[ObjectKey], None]] = []
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, callback: Callable[[ObjectKey], None]):
        self._subscribers.append(callback)

    def _notify(self, key: ObjectKey):
        for callback in self._subscribers:
            try:
                callback(key)
            except Exception as e:
                logger.error(f"Store subscriber failed for {key}: {e}", exc_info=True)

    def relist(self):
        items, resource_version = self.source.list()
        previous_keys = set(self.store.keys())
        redirects = [r for r in (_parse(item) for item in items) if r is not None]
        self.store.replace(redirects)
        self.resource_version = resource_version
        self.ready.set()
        logger.info(f"Listed {len(redirects)} Redirects at resourceVersion {resource_version}")
        for key in sorted(previous_keys | {r.key() for r in redirects}):
            self._notify(key)

    def handle_event(self, event: Dict[str, Any]):
        event_type = str(event.get('type', ''))
        obj = event.get('object')
        if not isinstance(obj, dict):
            logger.debug(f"Ignoring watch event without object: {event_type}")
            return

        if event_type == 'ERROR':
            raise ApiException(status=obj.get('code'), reason=obj.get('reason') or obj.get('message'))

        resource_version = (obj.get('metadata') or {}).get('resourceVersion')
        if resource_version:
            self.resource_version = resource_version
        if event_type == 'BOOKMARK':
            return

        key = _object_key(obj)
        if event_type == 'DELETED':
            # Only the key is needed; the final state may not parse
            if key is not None:
                logger.debug(f"Watch event DELETED for Redirect {key}")
                self.store.remove(key)
                self._notify(key)
            return

        redirect = _parse(obj)
        if redirect is None:
            # The last valid state is stale now, so stop serving and reconciling it
            if key is not None and self.store.get(key) is not None:
                self.store.remove(key)
                self._notify(key)
            return
        logger.debug(f"Watch event {event_type} for Redirect {redirect.key()}")
        self.store.apply_event(event_type, redirect)
        self._notify(redirect.key())

    def _backoff(self, backoff_seconds: float) -> float:
        jittered = backoff_seconds * (0.5 + random.random())
        self.stop_event.wait(jittered)
        return min(backoff_seconds * 2, MAX_BACKOFF_SECONDS)

    def run(self):
        backoff_seconds = 1
        while not self.stop_event.is_set():
            try:
                if self.resource_version is None:
                    self.relist()
                for event in self.source.watch(self.resource_version, self.watch_timeout_seconds):
                    if self.stop_event.is_set():
                        break
                    self.handle_event(event)
                backoff_seconds = 1
            except ApiException as e:
                if self.stop_event.is_set():
                    break
                if e.status == 410:
                    logger.warning("Watch resourceVersion expired, re-listing Redirects.")
                    self.resource_version = None
                    continue
                if e.status in (401, 403):
                    logger.error(f"Kubernetes API denied Redirect list/watch (status={e.status}). "
                                 f"Check the operator's RBAC permissions.")
                else:
                    logger.error(f"Kubernetes API error in Redirect watch: {e}")
                backoff_seconds = self._backoff(backoff_seconds)
            except Exception as e:
                if self.stop_event.is_set():
                    # stop() closed the watch connection under us
                    break
                logger.error(f"Unexpected error in Redirect watch loop: {e}", exc_info=True)
                backoff_seconds = self._backoff(backoff_seconds)
        logger.info("Redirect watch stopped.")

    def start(self) -> 'Reflector':
        self.stop_event.clear()
        self._thread = threading.Thread(target=self.run, name='redirect-reflector', daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: float = 10.0):
        self.stop_event.set()
        stop_source = getattr(self.source, 'stop', None)
        if stop_source is not None:
            stop_source()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Redirect watch thread did not stop in time.")


def start(source: WatchSource, store: Optional[Store] = None) -> Reflector:
    """Starts a reflector for source and returns it; its store is readable immediately."""
    return Reflector(source, store).start()
