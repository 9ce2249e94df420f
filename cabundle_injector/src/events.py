from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"


class Reason(str, Enum):
    """Reasons attached to the Kubernetes events and log records the controller emits."""

    SYNCED = "Synced"
    RESOURCE_EXISTS = "ErrResourceExists"


MESSAGE_RESOURCE_SYNCED = "CA Bundle synced successfully"


class ResourceExistsError(Exception):
    """A ConfigMap with the CA bundle name exists but is not controlled by the source Secret.

    The controller never overwrites or deletes such an object; a human has
    to remove it before the namespace can converge.
    """

    reason = Reason.RESOURCE_EXISTS

    def __init__(self, name: str, namespace: str) -> None:
        self.name = name
        self.namespace = namespace
        super().__init__(
            f"Resource '{name}' already exists and is not managed by CA Bundle Injector"
        )


def object_reference(obj: Any, kind: str, api_version: str = "v1") -> V1ObjectReference:
    metadata = obj.metadata
    return V1ObjectReference(
        api_version=api_version,
        kind=kind,
        name=metadata.name,
        namespace=metadata.namespace,
        uid=metadata.uid,
        resource_version=metadata.resource_version,
    )


class EventRecorder:
    """Writes ``core/v1`` Events so reconcile outcomes show up in ``kubectl describe``.

    Recording is best effort: API failures are logged and swallowed so a
    missing ``events`` RBAC grant never turns a successful sync into a retry.
    """

    def __init__(self, core_api: CoreV1Api, component: str) -> None:
        self.core_api = core_api
        self.component = component

    def record(
        self,
        involved: V1ObjectReference,
        event_type: str,
        reason: Reason,
        message: str,
    ) -> None:
        namespace = involved.namespace or "default"
        now = datetime.now(UTC)
        event = CoreV1Event(
            metadata=V1ObjectMeta(
                name=f"{involved.name}.{uuid4().hex[:16]}",
                namespace=namespace,
            ),
            involved_object=involved,
            type=event_type,
            reason=reason.value,
            message=message,
            source=V1EventSource(component=self.component),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            self.core_api.create_namespaced_event(namespace=namespace, body=event)
        except ApiException as exc:
            LOGGER.warning(
                "Failed to record %s event for %s/%s: %s",
                reason.value,
                namespace,
                involved.name,
                exc.reason,
            )
            return
        LOGGER.debug("Recorded %s event %s for %s/%s", event_type, reason.value, namespace, involved.name)
