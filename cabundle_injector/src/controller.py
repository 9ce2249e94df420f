from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass

from kubernetes.client import CoreV1Api

from cabundle_injector.src.events import EventRecorder
from cabundle_injector.src.handlers import CABundleReconciler
from cabundle_injector.src.informer import Informer
from cabundle_injector.src.router import EventRouter, QueueKind, bind
from cabundle_injector.src.worker import QueueWorker
from cabundle_injector.src.workqueue import RateLimitingQueue

CONTROLLER_AGENT_NAME = "ca-bundle-controller"
DEFAULT_LABEL_NAME = "azure-key-vault-env-injection"
DEFAULT_CONFIG_MAP_NAME = "akv2k8s-ca"


class CacheSyncError(RuntimeError):
    """Raised by :meth:`CABundleController.run` when the informer caches never sync."""


@dataclass(frozen=True)
class ControllerConfig:
    secret_namespace: str
    secret_name: str
    label_name: str = DEFAULT_LABEL_NAME
    config_map_name: str = DEFAULT_CONFIG_MAP_NAME
    workers: int = 2
    resync_seconds: int = 30
    cache_sync_timeout_seconds: int = 0
    informer_stop_timeout_seconds: int = 5


class CABundleController:
    """Copies the CA certificate of one Secret into a ConfigMap in every opt-in namespace.

    Three informers feed an :class:`EventRouter`, which fills one work queue
    per event class:

    ``secret``
        the source Secret was added, changed or deleted
    ``new_namespace``
        a namespace appeared carrying the opt-in label
    ``changed_namespace``
        a namespace's opt-in label value changed

    Each queue is drained by its own :class:`QueueWorker` pool calling the
    matching :class:`CABundleReconciler` method.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        config: ControllerConfig,
        *,
        recorder: EventRecorder | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()

        self.secret_informer = Informer(
            "secret",
            core_api.list_namespaced_secret,
            resync_seconds=config.resync_seconds,
            namespace=config.secret_namespace,
        )
        self.namespace_informer = Informer(
            "namespace",
            core_api.list_namespace,
            resync_seconds=config.resync_seconds,
        )
        self.config_map_informer = Informer(
            "configmap",
            core_api.list_config_map_for_all_namespaces,
            resync_seconds=config.resync_seconds,
            field_selector=f"metadata.name={config.config_map_name}",
        )
        self.informers = (self.secret_informer, self.namespace_informer, self.config_map_informer)

        self.queues = {kind: RateLimitingQueue(kind.value) for kind in QueueKind}

        self.logger.info("Setting up event handlers")
        self.router = EventRouter(secret_name=config.secret_name, label_name=config.label_name)
        self.secret_informer.add_event_handler(
            on_add=bind(self.router.secret_added, self.queues),
            on_update=bind(self.router.secret_updated, self.queues),
            on_delete=bind(self.router.secret_deleted, self.queues),
        )
        self.namespace_informer.add_event_handler(
            on_add=bind(self.router.namespace_added, self.queues),
            on_update=bind(self.router.namespace_updated, self.queues),
        )

        self.reconciler = CABundleReconciler(
            core_api,
            secret_lister=self.secret_informer.lister,
            namespace_lister=self.namespace_informer.lister,
            config_map_lister=self.config_map_informer.lister,
            label_name=config.label_name,
            secret_namespace=config.secret_namespace,
            secret_name=config.secret_name,
            config_map_name=config.config_map_name,
            recorder=recorder if recorder is not None else EventRecorder(core_api, CONTROLLER_AGENT_NAME),
        )
        handlers = {
            QueueKind.SECRET: self.reconciler.sync_secret,
            QueueKind.NEW_NAMESPACE: self.reconciler.sync_new_namespace,
            QueueKind.CHANGED_NAMESPACE: self.reconciler.sync_changed_namespace,
        }
        self.workers = [
            QueueWorker(kind, self.queues[kind], handlers[kind]) for kind in QueueKind
        ]

    def _wait_for_cache_sync(
        self, stop: threading.Event, informer_threads: list[threading.Thread]
    ) -> bool:
        timeout = self.config.cache_sync_timeout_seconds
        deadline = time.monotonic() + timeout if timeout > 0 else None
        while True:
            pending = [informer for informer in self.informers if not informer.has_synced.is_set()]
            if not pending:
                return True
            for informer, thread in zip(self.informers, informer_threads, strict=True):
                if not informer.has_synced.is_set() and not thread.is_alive():
                    self.logger.error("%s informer stopped before its cache synced", informer.kind)
                    return False
            if stop.is_set():
                return False
            if deadline is not None and time.monotonic() >= deadline:
                self.logger.error(
                    "Timed out after %ss waiting for %s cache(s) to sync",
                    timeout,
                    ", ".join(informer.kind for informer in pending),
                )
                return False
            stop.wait(timeout=0.1)

    def run(self, workers: int | None = None, stop_event: threading.Event | None = None) -> None:
        """Start informers and workers, block until *stop_event* is set, then shut down.

        Shutdown drops keys still waiting in the queues, lets every worker
        finish its current key and returns once all worker threads have
        exited. Raises :class:`CacheSyncError` if the caches do not sync
        before *stop_event* fires (or the configured timeout elapses); no
        worker is started in that case.
        """
        stop = stop_event or threading.Event()
        worker_count = self.config.workers if workers is None else workers
        if worker_count < 1:
            raise ValueError(f"workers must be >= 1, got: {worker_count}")

        self.logger.info("Starting CA Bundle Injector controller")
        informer_threads = [
            threading.Thread(
                target=informer.run,
                args=(stop,),
                name=f"{informer.kind}-informer",
                daemon=True,
            )
            for informer in self.informers
        ]
        for thread in informer_threads:
            thread.start()

        try:
            self.logger.info("Waiting for informer caches to sync")
            if not self._wait_for_cache_sync(stop, informer_threads):
                raise CacheSyncError("failed to wait for caches to sync")

            self.logger.info("Starting %d worker(s) per queue", worker_count)
            for worker in self.workers:
                worker.start(worker_count)
            self.ready.set()
            self.logger.info("Started workers")

            stop.wait()
            self.logger.info("Shutting down workers")
        finally:
            self.ready.clear()
            for queue in self.queues.values():
                queue.shut_down()
            for informer in self.informers:
                informer.request_stop()
            for worker in self.workers:
                worker.join()
            for thread in informer_threads:
                thread.join(timeout=self.config.informer_stop_timeout_seconds)
                if thread.is_alive():
                    self.logger.warning("%s did not stop in time; abandoning it", thread.name)


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _required_env(name: str) -> str:
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"Env var {name} is required")
    return value


def config_from_env() -> ControllerConfig:
    """Read :class:`ControllerConfig` from environment variables.

    Environment variables (with defaults):
        ``AKV_NAMESPACE``: namespace of the source Secret (required).
        ``AKV_SECRET_NAME``: name of the source Secret (required).
        ``AKV_LABEL_NAME``: opt-in namespace label (``azure-key-vault-env-injection``).
        ``CA_CONFIG_MAP_NAME``: ConfigMap created in opt-in namespaces (``akv2k8s-ca``).
        ``WORKER_COUNT``: workers per queue (``2``).
        ``RESYNC_SECONDS``: informer resync period, ``0`` disables (``30``).
        ``CACHE_SYNC_TIMEOUT_SECONDS``: give up waiting for caches, ``0`` waits forever (``0``).
    """
    label_name = os.getenv("AKV_LABEL_NAME", DEFAULT_LABEL_NAME).strip()
    if not label_name:
        raise ValueError("AKV_LABEL_NAME must be a non-empty string")

    config_map_name = os.getenv("CA_CONFIG_MAP_NAME", DEFAULT_CONFIG_MAP_NAME).strip()
    if not config_map_name:
        raise ValueError("CA_CONFIG_MAP_NAME must be a non-empty string")

    return ControllerConfig(
        secret_namespace=_required_env("AKV_NAMESPACE"),
        secret_name=_required_env("AKV_SECRET_NAME"),
        label_name=label_name,
        config_map_name=config_map_name,
        workers=env_int("WORKER_COUNT", 2, minimum=1),
        resync_seconds=env_int("RESYNC_SECONDS", 30, minimum=0),
        cache_sync_timeout_seconds=env_int("CACHE_SYNC_TIMEOUT_SECONDS", 0, minimum=0),
    )


def build_controller_from_env(core_api: CoreV1Api) -> CABundleController:
    return CABundleController(core_api=core_api, config=config_from_env())
