from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from kubernetes.client import ApiException

from cabundle_injector.src.cache import InvalidKeyError
from cabundle_injector.src.events import ResourceExistsError
from cabundle_injector.src.metrics import METRICS
from cabundle_injector.src.router import QueueKind
from cabundle_injector.src.workqueue import RateLimitingQueue

SyncHandler = Callable[[str], None]


class QueueWorker:
    """A pool of threads draining one work queue into one sync handler.

    Per item: ``get`` (blocks this thread only), run the handler, then on
    success ``forget`` the key's failure history, on failure re-add it with
    the queue's rate-limited backoff, and always ``done`` so the key can be
    delivered again. Malformed keys are dropped. The loop ends when the
    queue shuts down.
    """

    def __init__(
        self,
        kind: QueueKind,
        queue: RateLimitingQueue,
        handler: SyncHandler,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.queue = queue
        self.handler = handler
        self.logger = logger or logging.getLogger(__name__)
        self._threads: list[threading.Thread] = []

    def _observe(self, result: str, started: float) -> None:
        METRICS.reconcile_total.labels(queue=self.kind.value, result=result).inc()
        METRICS.reconcile_duration_seconds.labels(queue=self.kind.value).observe(
            time.monotonic() - started
        )

    def _process(self, key: str) -> None:
        started = time.monotonic()
        self.logger.debug("Handling '%s' in %s queue", key, self.kind.value)
        try:
            self.handler(key)
        except InvalidKeyError:
            self.queue.forget(key)
            self.logger.error("invalid resource key in %s queue: %s", self.kind.value, key)
            self._observe("invalid", started)
            return
        except (ApiException, ResourceExistsError) as exc:
            self.queue.add_rate_limited(key)
            self.logger.error("error syncing '%s': %s, requeuing", key, exc)
            self._observe("conflict" if isinstance(exc, ResourceExistsError) else "error", started)
            return
        except Exception:
            self.queue.add_rate_limited(key)
            self.logger.exception("unexpected error syncing '%s', requeuing", key)
            self._observe("error", started)
            return

        self.queue.forget(key)
        self.logger.info("Successfully synced CA Bundle '%s'", key)
        self._observe("success", started)

    def process_next_item(self) -> bool:
        """Process one key. Returns False once the queue has shut down."""
        key, shutdown = self.queue.get()
        if shutdown or key is None:
            return False
        try:
            self._process(key)
        finally:
            self.queue.done(key)
        return True

    def run(self) -> None:
        while self.process_next_item():
            pass

    def start(self, count: int) -> None:
        for index in range(count):
            thread = threading.Thread(
                target=self.run,
                name=f"{self.kind.value}-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every worker thread to exit. Returns False if any is still alive."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(timeout=remaining)
        return not any(thread.is_alive() for thread in self._threads)
