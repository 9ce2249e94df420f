from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import ApiException, CoreV1Api

from cabundle_injector.src.builder import (
    ca_cert_payload,
    config_map_payload,
    is_controlled_by,
    new_config_map,
)
from cabundle_injector.src.cache import Lister, object_labels, split_meta_namespace_key
from cabundle_injector.src.events import (
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    MESSAGE_RESOURCE_SYNCED,
    EventRecorder,
    Reason,
    ResourceExistsError,
    object_reference,
)
from cabundle_injector.src.kube import (
    create_config_map,
    delete_config_map,
    is_conflict,
    is_not_found,
    read_secret,
    replace_config_map,
)
from cabundle_injector.src.metrics import METRICS

OPT_IN_VALUE = "enabled"


class CABundleReconciler:
    """Converges the CA bundle ConfigMap in opt-in namespaces towards the source Secret.

    One method per event class. Each takes a queue key, reads current state
    (from the informer caches unless noted otherwise), writes the minimal
    change and returns ``None`` on success. Any exception means "not
    converged": the worker decides whether to requeue. Handlers never retry
    internally and are safe to run repeatedly or in any order.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        *,
        secret_lister: Lister,
        namespace_lister: Lister,
        config_map_lister: Lister,
        label_name: str,
        secret_namespace: str,
        secret_name: str,
        config_map_name: str,
        recorder: EventRecorder | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.secret_lister = secret_lister
        self.namespace_lister = namespace_lister
        self.config_map_lister = config_map_lister
        self.label_name = label_name
        self.secret_namespace = secret_namespace
        self.secret_name = secret_name
        self.config_map_name = config_map_name
        self.recorder = recorder
        self.logger = logger or logging.getLogger(__name__)

    def is_opted_in(self, namespace: Any) -> bool:
        return object_labels(namespace).get(self.label_name) == OPT_IN_VALUE

    def _record(self, obj: Any, kind: str, event_type: str, reason: Reason, message: str) -> None:
        if self.recorder is None:
            return
        self.recorder.record(object_reference(obj, kind), event_type, reason, message)

    def _cached_config_map(self, namespace: str) -> Any | None:
        try:
            return self.config_map_lister.get(namespace, self.config_map_name)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def _conflict(self, config_map: Any) -> ResourceExistsError:
        error = ResourceExistsError(
            name=config_map.metadata.name,
            namespace=config_map.metadata.namespace,
        )
        METRICS.conflicts_total.inc()
        self.logger.error("%s in namespace '%s'", error, error.namespace)
        self._record(config_map, "ConfigMap", EVENT_TYPE_WARNING, error.reason, str(error))
        return error

    def _source_secret(self) -> Any | None:
        """Return the source Secret, reading it from the API server when it is not cached.

        ``None`` means the Secret does not exist.
        """
        try:
            return self.secret_lister.get(self.secret_namespace, self.secret_name)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
        try:
            return read_secret(self.core_api, self.secret_namespace, self.secret_name)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def _verify_ownership(self, config_map: Any) -> bool:
        """Return True if *config_map* is controlled by the source Secret.

        A foreign object raises :class:`ResourceExistsError`. Without a source
        Secret ownership cannot be proven, so False is returned and the
        caller leaves the object alone.
        """
        secret = self._source_secret()
        if secret is None:
            self.logger.warning(
                "Source secret '%s/%s' does not exist; leaving configmap '%s' in namespace "
                "'%s' untouched",
                self.secret_namespace,
                self.secret_name,
                config_map.metadata.name,
                config_map.metadata.namespace,
            )
            return False
        if not is_controlled_by(config_map, secret):
            raise self._conflict(config_map)
        return True

    def _create(self, namespace: str, secret: Any) -> None:
        desired = new_config_map(self.config_map_name, namespace, secret)
        try:
            create_config_map(self.core_api, desired)
        except ApiException as exc:
            if is_conflict(exc):
                # The cache has not seen the object yet; the retry compares against it.
                self.logger.info(
                    "configmap '%s' in namespace '%s' already exists but is not cached yet",
                    self.config_map_name,
                    namespace,
                )
                raise
            self.logger.error(
                "Failed to create configmap '%s' in namespace '%s'",
                self.config_map_name,
                namespace,
            )
            raise
        METRICS.config_map_writes_total.labels(operation="create").inc()
        self.logger.info("Created configmap '%s' in namespace '%s'", self.config_map_name, namespace)

    def _create_from_live_secret(self, namespace: str) -> None:
        """Create the ConfigMap using an uncached read of the source Secret.

        A missing Secret is not an error here: once it is created the secret
        handler fills every opt-in namespace.
        """
        try:
            secret = read_secret(self.core_api, self.secret_namespace, self.secret_name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.warning(
                    "Source secret '%s/%s' does not exist; cannot create configmap '%s' in "
                    "namespace '%s' yet",
                    self.secret_namespace,
                    self.secret_name,
                    self.config_map_name,
                    namespace,
                )
                return
            raise
        self._create(namespace, secret)

    def _converge_namespace(self, namespace: str, secret: Any) -> None:
        config_map = self._cached_config_map(namespace)
        if config_map is None:
            self.logger.debug(
                "configmap '%s' not found in labelled namespace '%s' - creating",
                self.config_map_name,
                namespace,
            )
            self._create(namespace, secret)
            return

        if not is_controlled_by(config_map, secret):
            raise self._conflict(config_map)

        if config_map_payload(config_map) == ca_cert_payload(secret):
            return

        desired = new_config_map(self.config_map_name, namespace, secret)
        desired.metadata.resource_version = config_map.metadata.resource_version
        replace_config_map(self.core_api, desired)
        METRICS.config_map_writes_total.labels(operation="update").inc()
        self.logger.info("Updated configmap '%s' in namespace '%s'", self.config_map_name, namespace)

    def sync_secret(self, key: str) -> None:
        """Propagate the source Secret into every opt-in namespace.

        Every opt-in namespace is visited in a single pass. A foreign
        ConfigMap in one namespace does not hold back the others: the first
        :class:`ResourceExistsError` is raised after the loop. Any other
        error aborts the pass immediately.
        """
        namespace, name = split_meta_namespace_key(key)

        try:
            secret = self.secret_lister.get(namespace, name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.warning("secret '%s' in work queue no longer exists", key)
                return
            raise

        labelled_namespaces = self.namespace_lister.list({self.label_name: OPT_IN_VALUE})
        self.logger.debug(
            "Checking configmap '%s' in %d labelled namespace(s)",
            self.config_map_name,
            len(labelled_namespaces),
        )

        conflict: ResourceExistsError | None = None
        for labelled in labelled_namespaces:
            try:
                self._converge_namespace(labelled.metadata.name, secret)
            except ResourceExistsError as exc:
                conflict = conflict or exc

        if conflict is not None:
            raise conflict

        self._record(secret, "Secret", EVENT_TYPE_NORMAL, Reason.SYNCED, MESSAGE_RESOURCE_SYNCED)

    def sync_new_namespace(self, key: str) -> None:
        """Create the ConfigMap in a namespace that was just labelled.

        An existing ConfigMap owned by the source Secret is left alone; the
        secret handler owns content drift.
        """
        _, name = split_meta_namespace_key(key)

        try:
            namespace = self.namespace_lister.get("", name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info("namespace '%s' in work queue no longer exists", name)
                return
            raise

        if not self.is_opted_in(namespace):
            self.logger.debug(
                "namespace '%s' is not labelled %s=%s; nothing to create",
                name,
                self.label_name,
                OPT_IN_VALUE,
            )
            return

        config_map = self._cached_config_map(name)
        if config_map is None:
            self.logger.debug(
                "configmap '%s' not found in labelled namespace '%s' - creating",
                self.config_map_name,
                name,
            )
            self._create_from_live_secret(name)
            return

        if not self._verify_ownership(config_map):
            return

        self.logger.info(
            "configmap '%s' already present in newly labelled namespace '%s'; ignoring",
            self.config_map_name,
            name,
        )

    def sync_changed_namespace(self, key: str) -> None:
        """Add or remove the ConfigMap after a namespace's opt-in label changed."""
        _, name = split_meta_namespace_key(key)

        try:
            namespace = self.namespace_lister.get("", name)
        except ApiException as exc:
            if is_not_found(exc):
                self.logger.info("namespace '%s' in work queue no longer exists", name)
                return
            raise

        labelled = self.is_opted_in(namespace)
        config_map = self._cached_config_map(name)

        if config_map is None:
            if labelled:
                self.logger.debug(
                    "configmap '%s' not found in updated namespace '%s' - creating",
                    self.config_map_name,
                    name,
                )
                self._create_from_live_secret(name)
            return

        if not self._verify_ownership(config_map):
            return

        if labelled:
            return

        self.logger.info(
            "configmap '%s' exists in namespace '%s' which is no longer labelled to keep "
            "CA Bundle; deleting",
            self.config_map_name,
            name,
        )
        try:
            delete_config_map(
                self.core_api,
                name,
                self.config_map_name,
                uid=config_map.metadata.uid,
                resource_version=config_map.metadata.resource_version,
            )
        except ApiException as exc:
            if is_conflict(exc):
                self.logger.warning(
                    "configmap '%s' in namespace '%s' changed since it was checked; not deleting",
                    self.config_map_name,
                    name,
                )
                raise
            if not is_not_found(exc):
                raise
            return
        METRICS.config_map_writes_total.labels(operation="delete").inc()
