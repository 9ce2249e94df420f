from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    CoreV1Api,
    V1ConfigMap,
    V1DeleteOptions,
    V1Preconditions,
    V1Secret,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

FIELD_MANAGER = "ca-bundle-injector"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    """Return True for ``409`` responses (AlreadyExists and resourceVersion conflicts)."""
    return isinstance(exc, ApiException) and exc.status == 409


def not_found(kind: str, name: str) -> ApiException:
    """Build the ``404`` error cached reads raise, matching what the API server returns."""
    return ApiException(status=404, reason=f'{kind} "{name}" not found')


def read_secret(core_api: CoreV1Api, namespace: str, name: str) -> V1Secret:
    """Read a Secret straight from the API server, bypassing any local cache."""
    return core_api.read_namespaced_secret(name=name, namespace=namespace)


def create_config_map(core_api: CoreV1Api, config_map: V1ConfigMap) -> V1ConfigMap:
    return core_api.create_namespaced_config_map(
        namespace=config_map.metadata.namespace,
        body=config_map,
        field_manager=FIELD_MANAGER,
    )


def replace_config_map(core_api: CoreV1Api, config_map: V1ConfigMap) -> V1ConfigMap:
    """Replace a ConfigMap.

    ``metadata.resource_version`` must be set on *config_map* so the API
    server rejects the write with ``409`` if the object changed since it
    was read.
    """
    return core_api.replace_namespaced_config_map(
        name=config_map.metadata.name,
        namespace=config_map.metadata.namespace,
        body=config_map,
        field_manager=FIELD_MANAGER,
    )


def delete_config_map(
    core_api: CoreV1Api,
    namespace: str,
    name: str,
    *,
    uid: str | None = None,
    resource_version: str | None = None,
) -> None:
    """Delete a ConfigMap only if it is still the object identified by *uid*/*resource_version*.

    The API server answers ``409`` when a precondition no longer holds.
    """
    preconditions = None
    if uid is not None or resource_version is not None:
        preconditions = V1Preconditions(uid=uid, resource_version=resource_version)
    core_api.delete_namespaced_config_map(
        name=name,
        namespace=namespace,
        body=V1DeleteOptions(preconditions=preconditions),
    )
