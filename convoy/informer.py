#!/usr/bin/env python3
"""
=====================================================================
Convoy Event Informer
=====================================================================
Keeps an in-memory cache of Kubernetes Events in sync with the API
server and tells registered handlers about every new Event.

Lifecycle:
1. Full list of Events (initial sync). Every listed Event is reported
   to handlers as an addition, then has_synced becomes True.
2. Watch from the listed resourceVersion, applying ADDED / MODIFIED /
   DELETED to the cache.
3. On 410 Gone the resourceVersion is dropped and the cache relisted.
   Other errors back off (1s doubling, capped at 30s) and relist.
4. After resync_period seconds a fresh full list replaces the cache.

Handlers run synchronously on the informer thread and must not block.
=====================================================================
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

from kubernetes import watch
from kubernetes.client import ApiException, CoreV1Api

from convoy.errors import CacheLookupError
from convoy.models import WatchedEvent

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 30.0


class ResourceEventHandler:
    """Capability the informer calls for every observed addition."""

    def on_add(self, key: str) -> None:
        raise NotImplementedError


class EventInformer:
    """Informer-style cache of core/v1 Events, keyed by "<namespace>/<name>"."""

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: Optional[str] = None,
        resync_period_seconds: int = 600,
        watch_timeout_seconds: int = 300,
    ):
        """
        Args:
            core_api: Kubernetes CoreV1Api client
            namespace: Namespace to watch (None or "" watches all namespaces)
            resync_period_seconds: Interval between full relists
            watch_timeout_seconds: Server-side timeout of one watch request
        """
        self.core_api = core_api
        self.namespace = namespace or None
        self.resync_period_seconds = resync_period_seconds
        self.watch_timeout_seconds = watch_timeout_seconds

        self._cache: Dict[str, WatchedEvent] = {}
        self._lock = threading.RLock()
        self._handlers: List[ResourceEventHandler] = []
        self._resource_version: Optional[str] = None
        self._has_synced = False
        self._needs_relist = True
        self._last_list = 0.0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =================================================================
    # PUBLIC API
    # =================================================================

    @property
    def has_synced(self) -> bool:
        """True once the initial list has been applied. Stays True afterwards."""
        return self._has_synced

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        with self._lock:
            self._handlers.append(handler)

    def get(self, namespace: str, name: str) -> Optional[WatchedEvent]:
        """
        Return the cached Event, or None if it is not in the cache.

        Raises:
            CacheLookupError: if the cache is not usable (not synced yet,
                or the informer has been stopped).
        """
        if self._stop_event.is_set():
            raise CacheLookupError("informer is stopped")
        if not self._has_synced:
            raise CacheLookupError("informer cache has not synced")
        with self._lock:
            return self._cache.get(f"{namespace}/{name}")

    def list_keys(self) -> List[str]:
        with self._lock:
            return list(self._cache.keys())

    def start(self, stop_event: Optional[threading.Event] = None) -> None:
        """Start the background list/watch thread if not already running."""
        if self._thread and self._thread.is_alive():
            return
        if stop_event is not None:
            self._stop_event = stop_event

        self._thread = threading.Thread(
            target=self._run,
            name=f"event-informer-{self.namespace or 'all'}",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Event informer started (namespace={self.namespace or 'all'})")

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread:
            self._thread.join(timeout)

    # =================================================================
    # LIST / WATCH LOOP
    # =================================================================

    def _run(self) -> None:
        backoff = 1.0
        while not self._stop_event.is_set():
            try:
                if self._needs_relist or self._resync_due():
                    self._full_resync()
                    backoff = 1.0

                self._run_watch_loop()
                backoff = 1.0
            except ApiException as exc:
                if exc.status == 410:
                    logger.info("Event watch expired (410 Gone); relisting")
                    self._resource_version = None
                    self._needs_relist = True
                else:
                    logger.warning(f"Event informer API error: {exc}", exc_info=True)
                    self._needs_relist = True
                    self._stop_event.wait(min(backoff, MAX_BACKOFF_SECONDS))
                    backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)
            except Exception as exc:
                logger.warning(f"Unexpected event informer error: {exc}", exc_info=True)
                self._needs_relist = True
                self._stop_event.wait(min(backoff, MAX_BACKOFF_SECONDS))
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)

        logger.info("Event informer stopped")

    def _resync_due(self) -> bool:
        return time.monotonic() - self._last_list >= self.resync_period_seconds

    def _list_events(self, **kwargs):
        if self.namespace:
            return self.core_api.list_namespaced_event(self.namespace, **kwargs)
        return self.core_api.list_event_for_all_namespaces(**kwargs)

    def _full_resync(self) -> None:
        """List every Event and replace the cache with the result."""
        resp = self._list_events()
        items = getattr(resp, "items", None) or []
        metadata = getattr(resp, "metadata", None)
        resource_version = getattr(metadata, "resource_version", None)

        # Build the new cache outside the lock to avoid blocking readers
        new_cache: Dict[str, WatchedEvent] = {}
        for item in items:
            event = WatchedEvent.from_k8s(item)
            if event.name:
                new_cache[event.key] = event

        with self._lock:
            added = [key for key in new_cache if key not in self._cache]
            self._cache = new_cache
            self._resource_version = resource_version
            self._needs_relist = False
            self._last_list = time.monotonic()

        logger.info(f"Listed {len(new_cache)} events ({len(added)} new, resourceVersion={resource_version})")
        for key in added:
            self._notify_add(key)

        if not self._has_synced:
            self._has_synced = True
            logger.info("Event informer cache synced")

    def _run_watch_loop(self) -> None:
        """Stream watch events into the cache until the watch times out."""
        w = watch.Watch()
        kwargs: Dict[str, Any] = {"timeout_seconds": self.watch_timeout_seconds}
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version
        func = self.core_api.list_namespaced_event if self.namespace else self.core_api.list_event_for_all_namespaces
        args = (self.namespace,) if self.namespace else ()
        try:
            for event in w.stream(func, *args, **kwargs):
                if self._stop_event.is_set():
                    break
                self._handle_event(event)
        finally:
            w.stop()

    def _handle_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        obj = event.get("object")
        if event_type == "ERROR":
            status = obj.get("code") if isinstance(obj, dict) else getattr(obj, "code", None)
            if status == 410:
                raise ApiException(status=410, reason="Gone")
            raise ApiException(status=status or 500, reason=f"watch error: {obj}")
        if obj is None:
            return

        snapshot = WatchedEvent.from_k8s(obj)
        if not snapshot.name:
            return

        key = snapshot.key
        is_new = False
        with self._lock:
            if event_type == "DELETED":
                self._cache.pop(key, None)
            else:
                is_new = key not in self._cache
                self._cache[key] = snapshot
            if snapshot.resource_version:
                self._resource_version = snapshot.resource_version

        if event_type == "ADDED" and is_new:
            self._notify_add(key)

    def _notify_add(self, key: str) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler.on_add(key)
            except Exception as e:
                logger.error(f"Event handler failed for {key}: {e}", exc_info=True)
