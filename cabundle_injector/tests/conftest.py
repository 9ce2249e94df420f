from __future__ import annotations

import base64
import copy
import itertools
import queue
import threading
import time
from collections.abc import Callable, Iterator
from types import SimpleNamespace
from typing import Any
from unittest.mock import patch

import pytest
from kubernetes.client import (
    ApiException,
    V1ConfigMap,
    V1DeleteOptions,
    V1Namespace,
    V1ObjectMeta,
    V1OwnerReference,
    V1Secret,
)

from cabundle_injector.src.cache import Lister, ObjectStore
from cabundle_injector.src.events import EventRecorder
from cabundle_injector.src.handlers import CABundleReconciler

SECRET_NAMESPACE = "akv2k8s"
SECRET_NAME = "ca-bundle"
SECRET_UID = "secret-uid-1"
LABEL_NAME = "azure-key-vault-env-injection"
CONFIG_MAP_NAME = "akv2k8s-ca"


def encode(payload: str) -> str:
    return base64.b64encode(payload.encode("utf-8")).decode("ascii")


class FakeCoreApi:
    """In-memory stand-in for ``CoreV1Api`` whose stores double as informer caches."""

    def __init__(self) -> None:
        self.secrets = ObjectStore()
        self.namespaces = ObjectStore()
        self.config_maps = ObjectStore()
        self.events: list[Any] = []
        self.writes: list[tuple[str, str, str]] = []
        self.failures: dict[str, list[ApiException]] = {}
        self._versions = itertools.count(100)
        self._write_lock = threading.Lock()
        self.watch_events: dict[str, queue.Queue[dict[str, Any]]] = {
            "secret": queue.Queue(),
            "namespace": queue.Queue(),
            "configmap": queue.Queue(),
        }

    def _next_version(self) -> str:
        return str(next(self._versions))

    def fail_next(self, operation: str, status: int = 500) -> None:
        self.failures.setdefault(operation, []).append(ApiException(status=status, reason="boom"))

    def _maybe_fail(self, operation: str) -> None:
        pending = self.failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _put(self, kind: str, store: ObjectStore, obj: Any) -> None:
        previous = store.upsert(obj)
        event_type = "ADDED" if previous is None else "MODIFIED"
        self.watch_events[kind].put({"type": event_type, "object": obj})

    # -- seeding -----------------------------------------------------------

    def add_secret(
        self,
        payload: str | None = "CERT_V1",
        name: str = SECRET_NAME,
        namespace: str = SECRET_NAMESPACE,
        uid: str = SECRET_UID,
    ) -> V1Secret:
        secret = V1Secret(
            metadata=V1ObjectMeta(
                name=name,
                namespace=namespace,
                uid=uid,
                resource_version=self._next_version(),
            ),
            data={"caCert": encode(payload)} if payload is not None else None,
        )
        self._put("secret", self.secrets, secret)
        return secret

    def add_namespace(self, name: str, labels: dict[str, str] | None = None) -> V1Namespace:
        namespace = V1Namespace(
            metadata=V1ObjectMeta(
                name=name,
                labels=labels,
                resource_version=self._next_version(),
            )
        )
        self._put("namespace", self.namespaces, namespace)
        return namespace

    def label(self, name: str, value: str | None) -> V1Namespace:
        labels = {LABEL_NAME: value} if value is not None else {}
        return self.add_namespace(name, labels)

    def add_config_map(
        self,
        namespace: str,
        payload: str = "FOREIGN",
        owner_uid: str | None = None,
        name: str = CONFIG_MAP_NAME,
        uid: str | None = None,
    ) -> V1ConfigMap:
        owners = None
        if owner_uid is not None:
            owners = [
                V1OwnerReference(
                    api_version="v1",
                    kind="Secret",
                    name=SECRET_NAME,
                    uid=owner_uid,
                    controller=True,
                )
            ]
        config_map = V1ConfigMap(
            metadata=V1ObjectMeta(
                name=name,
                namespace=namespace,
                owner_references=owners,
                uid=uid or f"cm-uid-{namespace}",
                resource_version=self._next_version(),
            ),
            data={"caCert": payload},
        )
        self._put("configmap", self.config_maps, config_map)
        return config_map

    def config_map(self, namespace: str, name: str = CONFIG_MAP_NAME) -> V1ConfigMap | None:
        return self.config_maps.get(f"{namespace}/{name}")

    # -- CoreV1Api surface --------------------------------------------------

    def read_namespaced_secret(self, name: str, namespace: str) -> V1Secret:
        self._maybe_fail("read_secret")
        secret = self.secrets.get(f"{namespace}/{name}")
        if secret is None:
            raise ApiException(status=404, reason="Not Found")
        return secret

    def create_namespaced_config_map(
        self, namespace: str, body: V1ConfigMap, field_manager: str | None = None
    ) -> V1ConfigMap:
        with self._write_lock:
            self._maybe_fail("create")
            if self.config_map(namespace, body.metadata.name) is not None:
                raise ApiException(status=409, reason="AlreadyExists")
            stored = copy.deepcopy(body)
            stored.metadata.resource_version = self._next_version()
            stored.metadata.uid = f"cm-uid-{stored.metadata.resource_version}"
            self._put("configmap", self.config_maps, stored)
            self.writes.append(("create", namespace, body.metadata.name))
            return stored

    def replace_namespaced_config_map(
        self,
        name: str,
        namespace: str,
        body: V1ConfigMap,
        field_manager: str | None = None,
    ) -> V1ConfigMap:
        with self._write_lock:
            self._maybe_fail("replace")
            existing = self.config_map(namespace, name)
            if existing is None:
                raise ApiException(status=404, reason="Not Found")
            if body.metadata.resource_version != existing.metadata.resource_version:
                raise ApiException(status=409, reason="Conflict")
            stored = copy.deepcopy(body)
            stored.metadata.resource_version = self._next_version()
            stored.metadata.uid = existing.metadata.uid
            self._put("configmap", self.config_maps, stored)
            self.writes.append(("replace", namespace, name))
            return stored

    def delete_namespaced_config_map(
        self, name: str, namespace: str, body: V1DeleteOptions | None = None
    ) -> None:
        with self._write_lock:
            self._maybe_fail("delete")
            existing = self.config_map(namespace, name)
            if existing is None:
                raise ApiException(status=404, reason="Not Found")
            preconditions = body.preconditions if body is not None else None
            if preconditions is not None and (
                (preconditions.uid and preconditions.uid != existing.metadata.uid)
                or (
                    preconditions.resource_version
                    and preconditions.resource_version != existing.metadata.resource_version
                )
            ):
                raise ApiException(status=409, reason="Conflict")
            self.config_maps.delete(existing)
            self.watch_events["configmap"].put({"type": "DELETED", "object": existing})
            self.writes.append(("delete", namespace, name))

    def _listing(self, items: list[Any]) -> SimpleNamespace:
        return SimpleNamespace(
            metadata=SimpleNamespace(resource_version=self._next_version()),
            items=items,
        )

    def list_namespaced_secret(self, namespace: str, **kwargs: Any) -> SimpleNamespace:
        return self._listing(
            [secret for secret in self.secrets.list() if secret.metadata.namespace == namespace]
        )

    def list_namespace(self, **kwargs: Any) -> SimpleNamespace:
        return self._listing(self.namespaces.list())

    def list_config_map_for_all_namespaces(
        self, field_selector: str | None = None, **kwargs: Any
    ) -> SimpleNamespace:
        items = self.config_maps.list()
        if field_selector:
            name = field_selector.split("=", 1)[1]
            items = [config_map for config_map in items if config_map.metadata.name == name]
        return self._listing(items)

    def kind_of(self, list_fn: Any) -> str:
        if list_fn == self.list_namespaced_secret:
            return "secret"
        if list_fn == self.list_namespace:
            return "namespace"
        return "configmap"

    def create_namespaced_event(self, namespace: str, body: Any) -> Any:
        self._maybe_fail("event")
        self.events.append(body)
        return body


class FakeWatch:
    """Replays :attr:`FakeCoreApi.watch_events` as a short-lived watch stream."""

    def __init__(self, api: FakeCoreApi, stream_seconds: float = 0.2) -> None:
        self.api = api
        self.stream_seconds = stream_seconds
        self._stopped = threading.Event()

    def stream(self, list_fn: Any, **kwargs: Any) -> Any:
        events = self.api.watch_events[self.api.kind_of(list_fn)]
        deadline = time.monotonic() + self.stream_seconds
        while not self._stopped.is_set() and time.monotonic() < deadline:
            try:
                yield events.get(timeout=0.02)
            except queue.Empty:
                continue

    def stop(self) -> None:
        self._stopped.set()


def make_reconciler(api: FakeCoreApi, **overrides: Any) -> CABundleReconciler:
    """Reconciler reading straight from *api*'s stores; *overrides* swap in other listers."""
    kwargs: dict[str, Any] = {
        "secret_lister": Lister(api.secrets, "secret"),
        "namespace_lister": Lister(api.namespaces, "namespace"),
        "config_map_lister": Lister(api.config_maps, "configmap"),
        "label_name": LABEL_NAME,
        "secret_namespace": SECRET_NAMESPACE,
        "secret_name": SECRET_NAME,
        "config_map_name": CONFIG_MAP_NAME,
        "recorder": EventRecorder(api, "ca-bundle-controller"),  # type: ignore[arg-type]
    }
    kwargs.update(overrides)
    return CABundleReconciler(api, **kwargs)  # type: ignore[arg-type]


@pytest.fixture
def cluster() -> FakeCoreApi:
    return FakeCoreApi()


@pytest.fixture
def reconciler(cluster: FakeCoreApi) -> CABundleReconciler:
    return make_reconciler(cluster)


@pytest.fixture
def reconciler_factory(cluster: FakeCoreApi) -> Callable[..., CABundleReconciler]:
    def _make(**overrides: Any) -> CABundleReconciler:
        return make_reconciler(cluster, **overrides)

    return _make


@pytest.fixture
def watched_cluster(cluster: FakeCoreApi) -> Iterator[FakeCoreApi]:
    """The fake cluster with ``watch.Watch`` streaming its change feed to informers."""
    with patch(
        "cabundle_injector.src.informer.watch.Watch",
        side_effect=lambda: FakeWatch(cluster),
    ):
        yield cluster
