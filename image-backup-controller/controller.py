import logging
import signal
import sys
import threading
from collections import Counter
from typing import List, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from errors import ReconcileError
from image_clone import registry_login
from k8s_client import ClusterClient, create_cluster_client
from reconciler import Reconciler
from settings import ControllerConfig, create_config_from_env
from workloads import WorkItem, WorkloadKind
from work_queue import RateLimitingQueue

logger = logging.getLogger(__name__)

WATCH_TIMEOUT = 300  # seconds; each expiry triggers a full relist
WATCH_RETRY_DELAY = 5
QUEUE_NAME = "image-backup-controller"


class Controller:
    """Watches workloads and feeds them through the reconciler"""

    def __init__(self, cluster: ClusterClient, config: ControllerConfig,
                 reconciler: Optional[Reconciler] = None,
                 queue: Optional[RateLimitingQueue] = None,
                 kinds=(WorkloadKind.DEPLOYMENT, WorkloadKind.DAEMON_SET)):
        self.cluster = cluster
        self.config = config
        self.reconciler = reconciler or Reconciler(cluster, config)
        self.queue = queue or RateLimitingQueue(name=QUEUE_NAME)
        self.kinds = kinds
        self._stop = threading.Event()
        self._permanent_failures: Counter = Counter()
        self._failures_lock = threading.Lock()

    def enqueue(self, obj, kind: WorkloadKind):
        meta = obj.metadata
        if self.config.is_excluded(meta.namespace):
            logger.debug(f"Ignoring {kind.value} {meta.namespace}/{meta.name} in excluded namespace")
            return
        self.queue.add(WorkItem(namespace=meta.namespace, name=meta.name, kind=kind))

    def handle_event(self, event, kind: WorkloadKind) -> bool:
        """Enqueue on add/update; returns False when the watch must relist"""
        if event["type"] == "ERROR":
            logger.warning(f"{kind.value} watch error: {event.get('raw_object') or event['object']}")
            return False
        if event["type"] in ("ADDED", "MODIFIED"):
            self.enqueue(event["object"], kind)
        return True

    def _watch(self, kind: WorkloadKind):
        list_fn = self.cluster.list_function(kind.value)
        while not self._stop.is_set():
            w = watch.Watch()
            try:
                listing = list_fn(_request_timeout=self.config.api_timeout_seconds)
                for obj in listing.items:
                    self.enqueue(obj, kind)
                resource_version = listing.metadata.resource_version

                for event in w.stream(list_fn, resource_version=resource_version,
                                      timeout_seconds=WATCH_TIMEOUT):
                    if self._stop.is_set() or not self.handle_event(event, kind):
                        w.stop()
                        break
            except ApiException as e:
                if e.status == 410:
                    logger.info(f"{kind.value} watch expired, relisting")
                    continue
                logger.error(f"Error watching {kind.value}s: {e.status} {e.reason}")
                self._stop.wait(WATCH_RETRY_DELAY)
            except Exception as e:
                logger.error(f"Error watching {kind.value}s: {e}")
                self._stop.wait(WATCH_RETRY_DELAY)

    def _forget(self, item: WorkItem):
        with self._failures_lock:
            self._permanent_failures.pop(item, None)
        self.queue.forget(item)

    def _handle_error(self, item: WorkItem, err: Exception):
        if not getattr(err, "retryable", True):
            logger.warning(f"Dropping {item}, not retryable: {err}")
            self._forget(item)
            return
        if getattr(err, "permanent", False):
            with self._failures_lock:
                self._permanent_failures[item] += 1
                failures = self._permanent_failures[item]
            if failures > self.config.max_permanent_retries:
                logger.error(f"Dropping {item} after {failures} failures: {err}")
                self._forget(item)
                return
        retries = self.queue.num_requeues(item)
        logger.error(f"Error syncing {item} (retry {retries + 1}): {err}")
        self.queue.add_rate_limited(item)

    def process_next_work_item(self) -> bool:
        item, shutdown = self.queue.get()
        if shutdown:
            return False
        try:
            result = self.reconciler.reconcile(item)
        except ReconcileError as e:
            self._handle_error(item, e)
        except Exception as e:
            logger.exception(f"Unexpected error syncing {item}")
            self._handle_error(item, e)
        else:
            if result.requeue_after > 0:
                self.queue.forget(item)
                self.queue.add_after(item, result.requeue_after)
            elif result.requeue:
                self.queue.add_rate_limited(item)
            else:
                self._forget(item)
                logger.debug(f"Successfully synced {item}")
        finally:
            self.queue.done(item)
        return True

    def run_worker(self):
        while self.process_next_work_item():
            pass

    def run(self, stop: threading.Event):
        """Start watchers and workers, block until ``stop`` is set, then drain"""
        logger.info("Starting image-backup-controller")
        self._stop = stop
        for kind in self.kinds:
            threading.Thread(target=self._watch, args=(kind,), name=f"watch-{kind.value}", daemon=True).start()

        workers: List[threading.Thread] = []
        for i in range(self.config.workers):
            t = threading.Thread(target=self.run_worker, name=f"worker-{i}")
            t.start()
            workers.append(t)
        logger.info(f"Started {len(workers)} workers")

        stop.wait()
        logger.info("Shutting down workers")
        self.queue.shut_down_with_drain()
        for t in workers:
            t.join()


def main():
    config = create_config_from_env()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )

    problems = config.validate()
    if problems:
        for problem in problems:
            logger.error(f"Invalid configuration: {problem}")
        sys.exit(1)

    print("🪞 Image Backup Controller Started")

    if not config.skip_login:
        logger.info(f"Logging into registry: {config.registry or 'Docker Hub'}")
        registry_login(config.registry, config.registry_username, config.registry_password)

    cluster = create_cluster_client(config.kubeconfig, config.api_timeout_seconds)
    controller = Controller(cluster, config)

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    controller.run(stop)


if __name__ == "__main__":
    main()
