from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from cabundle_injector.src.cache import meta_namespace_key, object_labels, resource_version
from cabundle_injector.src.workqueue import RateLimitingQueue

LOGGER = logging.getLogger(__name__)


class QueueKind(str, Enum):
    SECRET = "secret"
    NEW_NAMESPACE = "new_namespace"
    CHANGED_NAMESPACE = "changed_namespace"


@dataclass(frozen=True)
class Route:
    queue: QueueKind
    key: str


class EventRouter:
    """Decides which watch notifications are worth a reconciliation, and where.

    Every method is a pure function of the object snapshots it is given and
    returns a :class:`Route`, or ``None`` when the change is irrelevant.
    Enqueueing is left to :func:`bind`.
    """

    def __init__(self, secret_name: str, label_name: str) -> None:
        self.secret_name = secret_name
        self.label_name = label_name

    def _secret_route(self, secret: Any, action: str) -> Route | None:
        if secret.metadata.name != self.secret_name:
            return None
        LOGGER.debug("Secret '%s' monitored by CA Bundle Injector %s", secret.metadata.name, action)
        return Route(QueueKind.SECRET, meta_namespace_key(secret))

    def secret_added(self, secret: Any) -> Route | None:
        return self._secret_route(secret, "added")

    def secret_updated(self, old: Any, new: Any) -> Route | None:
        # Resyncs re-deliver unchanged objects; distinct versions always differ in resourceVersion.
        if resource_version(old) == resource_version(new):
            return None
        return self._secret_route(new, "changed")

    def secret_deleted(self, secret: Any) -> Route | None:
        return self._secret_route(secret, "deleted")

    def namespace_added(self, namespace: Any) -> Route | None:
        label = object_labels(namespace).get(self.label_name)
        if not label:
            return None
        LOGGER.debug(
            "Namespace '%s' labelled '%s' will be monitored by CA Bundle Injector",
            namespace.metadata.name,
            label,
        )
        return Route(QueueKind.NEW_NAMESPACE, meta_namespace_key(namespace))

    def namespace_updated(self, old: Any, new: Any) -> Route | None:
        if resource_version(old) == resource_version(new):
            return None
        if object_labels(old).get(self.label_name) == object_labels(new).get(self.label_name):
            return None
        LOGGER.debug("Label '%s' on namespace '%s' changed", self.label_name, new.metadata.name)
        return Route(QueueKind.CHANGED_NAMESPACE, meta_namespace_key(new))


def bind(
    route_fn: Callable[..., Route | None],
    queues: Mapping[QueueKind, RateLimitingQueue],
) -> Callable[..., None]:
    """Adapt a router method into an informer callback that enqueues the routed key."""

    def _enqueue(*objs: Any) -> None:
        route = route_fn(*objs)
        if route is None:
            return
        queues[route.queue].add_rate_limited(route.key)

    return _enqueue
