from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from typing import Any

from cabundle_injector.src.kube import not_found


class InvalidKeyError(ValueError):
    """Raised when a queue key cannot be split into namespace and name."""


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` key for *obj*, or ``name`` when cluster-scoped."""
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        raise ValueError(f"object has no metadata.name: {obj!r}")
    namespace = getattr(metadata, "namespace", None)
    if namespace:
        return f"{namespace}/{name}"
    return name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a key produced by :func:`meta_namespace_key` into ``(namespace, name)``.

    Cluster-scoped keys come back with an empty namespace.
    """
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise InvalidKeyError(f"unexpected key format: {key!r}")


def object_labels(obj: Any) -> dict[str, str]:
    labels = getattr(getattr(obj, "metadata", None), "labels", None)
    if not isinstance(labels, dict):
        return {}
    return labels


def resource_version(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class ObjectStore:
    """Thread-safe snapshot of the objects an informer has observed, keyed by
    :func:`meta_namespace_key`."""

    def __init__(self) -> None:
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()

    def upsert(self, obj: Any) -> Any | None:
        """Store *obj* and return the snapshot it replaced, if any."""
        key = meta_namespace_key(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def delete(self, obj: Any) -> Any | None:
        key = meta_namespace_key(obj)
        with self._lock:
            return self._items.pop(key, None)

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._items.values())

    def replace(
        self, objects: Iterable[Any]
    ) -> tuple[list[Any], list[tuple[Any, Any]], list[Any]]:
        """Swap the store contents for a fresh listing.

        Returns ``(added, updated, deleted)`` where ``updated`` holds
        ``(old, new)`` pairs, so the caller can replay the difference as
        notifications after a re-list.
        """
        fresh = {meta_namespace_key(obj): obj for obj in objects}
        with self._lock:
            previous = self._items
            self._items = fresh

        added = [obj for key, obj in fresh.items() if key not in previous]
        updated = [(previous[key], obj) for key, obj in fresh.items() if key in previous]
        deleted = [obj for key, obj in previous.items() if key not in fresh]
        return added, updated, deleted

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class Lister:
    """Read-only, eventually consistent view over an :class:`ObjectStore`.

    ``get`` raises the same ``404`` :class:`~kubernetes.client.ApiException`
    the API server would, so callers classify cached and direct reads the
    same way.
    """

    def __init__(self, store: ObjectStore, kind: str) -> None:
        self._store = store
        self.kind = kind

    def get(self, namespace: str, name: str) -> Any:
        key = f"{namespace}/{name}" if namespace else name
        obj = self._store.get(key)
        if obj is None:
            raise not_found(self.kind, name)
        return obj

    def list(self, label_selector: Mapping[str, str] | None = None) -> list[Any]:
        """Return cached objects whose labels contain every pair in *label_selector*."""
        selector = dict(label_selector or {})
        return [
            obj
            for obj in self._store.list()
            if all(object_labels(obj).get(k) == v for k, v in selector.items())
        ]
