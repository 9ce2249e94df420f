from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from cabundle_injector.src.cache import Lister, ObjectStore
from cabundle_injector.src.metrics import METRICS

AddHandler = Callable[[Any], None]
UpdateHandler = Callable[[Any, Any], None]
DeleteHandler = Callable[[Any], None]

_DEFAULT_WATCH_TIMEOUT_SECONDS = 30
_MAX_BACKOFF_SECONDS = 30


class Informer:
    """List-then-watch cache for one Kubernetes resource kind.

    The informer keeps an :class:`ObjectStore` in step with the API server
    and fans every change out to the registered handlers:

    1. An initial list (retried with jittered exponential backoff) seeds the
       store, delivers ``on_add`` for every object and sets ``has_synced``.
    2. A streaming watch resumes from the list's ``resourceVersion`` and
       turns ``ADDED``/``MODIFIED``/``DELETED`` events into
       ``on_add``/``on_update``/``on_delete`` calls.
    3. ``410 Gone`` triggers a re-list; the difference against the store is
       replayed as notifications so nothing observed while disconnected is
       lost.
    4. Every ``resync_seconds`` each cached object is re-delivered as
       ``on_update(obj, obj)``.  Consumers recognise these by the unchanged
       ``resourceVersion``.

    ``401`` / ``403`` responses are treated as RBAC misconfiguration and stop
    the informer with an error log instead of retrying forever.
    """

    def __init__(
        self,
        kind: str,
        list_fn: Callable[..., Any],
        *,
        resync_seconds: int = 30,
        logger: logging.Logger | None = None,
        **list_kwargs: Any,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.list_kwargs = list_kwargs
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.store = ObjectStore()
        self.lister = Lister(self.store, kind)
        self.has_synced = threading.Event()

        self._add_handlers: list[AddHandler] = []
        self._update_handlers: list[UpdateHandler] = []
        self._delete_handlers: list[DeleteHandler] = []

        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: AddHandler | None = None,
        on_update: UpdateHandler | None = None,
        on_delete: DeleteHandler | None = None,
    ) -> None:
        if on_add is not None:
            self._add_handlers.append(on_add)
        if on_update is not None:
            self._update_handlers.append(on_update)
        if on_delete is not None:
            self._delete_handlers.append(on_delete)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _notify(self, handlers: list[Callable[..., None]], *objs: Any) -> None:
        for handler in handlers:
            try:
                handler(*objs)
            except Exception:
                self.logger.exception("%s event handler failed", self.kind)

    def _list(self) -> str | None:
        """List every object, replace the store and replay the difference.

        Returns the list's ``resourceVersion`` to resume watching from.
        """
        listing = self.list_fn(**self.list_kwargs)
        items = getattr(listing, "items", None) or []
        added, updated, deleted = self.store.replace(items)
        for obj in added:
            self._notify(self._add_handlers, obj)
        for old, new in updated:
            self._notify(self._update_handlers, old, new)
        for obj in deleted:
            self._notify(self._delete_handlers, obj)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def handle_watch_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the store and notify handlers."""
        if event_type in {"ADDED", "MODIFIED"}:
            previous = self.store.upsert(obj)
            if previous is None:
                self._notify(self._add_handlers, obj)
            else:
                self._notify(self._update_handlers, previous, obj)
        elif event_type == "DELETED":
            previous = self.store.delete(obj)
            self._notify(self._delete_handlers, previous if previous is not None else obj)
        else:
            self.logger.debug("Ignoring %s watch event of type %s", self.kind, event_type)

    def resync(self) -> None:
        """Re-deliver every cached object as an update with identical old and new snapshots."""
        for obj in self.store.list():
            self._notify(self._update_handlers, obj, obj)

    def _next_watch_timeout_seconds(self, next_resync: float | None, now_monotonic: float) -> int:
        if next_resync is None:
            return _DEFAULT_WATCH_TIMEOUT_SECONDS
        remaining = max(1.0, next_resync - now_monotonic)
        return min(_DEFAULT_WATCH_TIMEOUT_SECONDS, max(1, math.ceil(remaining)))

    def _denied(self, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            self.kind,
            phase,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=self.kind).inc()
        return True

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Run the list/watch loop until *stop_event* is set or :meth:`request_stop` is called."""
        stop = stop_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._list()
                self.has_synced.set()
                self.logger.info(
                    "Synced %d %s object(s); watching from resourceVersion %s",
                    len(self.store),
                    self.kind,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._denied(exc, "initial list"):
                    return
                self.logger.exception("Initial %s list failed", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, _MAX_BACKOFF_SECONDS)

        if self._should_stop(stop):
            return

        next_resync = (
            time.monotonic() + self.resync_seconds if self.resync_seconds > 0 else None
        )
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                timeout_seconds = self._next_watch_timeout_seconds(next_resync, time.monotonic())
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=timeout_seconds,
                    **self.list_kwargs,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    self.handle_watch_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: etcd compacted past our resourceVersion, re-list
                # and resume from the fresh snapshot.
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.kind)
                    try:
                        resource_version = self._list()
                    except ApiException as relist_exc:
                        if self._denied(relist_exc, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind)
                        METRICS.watch_errors_total.labels(kind=self.kind).inc()
                        resource_version = None
                    continue

                if self._denied(exc, "watch"):
                    return

                self.logger.exception("Kubernetes API %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)
            except Exception:
                self.logger.exception("Unexpected %s watch error", self.kind)
                METRICS.watch_errors_total.labels(kind=self.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, _MAX_BACKOFF_SECONDS)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

            if next_resync is not None and time.monotonic() >= next_resync:
                if not self._should_stop(stop):
                    self.resync()
                next_resync = time.monotonic() + self.resync_seconds
