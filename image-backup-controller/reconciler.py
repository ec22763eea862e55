"""
Reconciliation state machine.

One pass over a work item walks these steps, stopping at the first one that
has work to do:

    skip -> ensure-secret -> ensure-secret-reference -> backup-images -> commit-update

Creating the secret and adding the secret reference each end the pass with a
requeue, so the next pass starts from freshly read state. Image rewrites are
only committed to ready workloads; unready ones are retried after a delay.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from errors import NotFound, ReconcileError
from image_clone import RegistryClient, backup_image, is_mirrored
from pull_secrets import ensure_secret
from settings import ControllerConfig
from workloads import (
    Container,
    WorkItem,
    WorkloadBuilder,
    WorkloadSnapshot,
    WorkloadUpdater,
    adapter_for,
)

logger = logging.getLogger(__name__)

STEP_FETCH = "fetch-workload"
STEP_ENSURE_SECRET = "ensure-secret"
STEP_ENSURE_SECRET_REF = "ensure-secret-reference"
STEP_BACKUP_IMAGES = "backup-images"
STEP_COMMIT = "commit-update"


@dataclass(frozen=True)
class Result:
    """Outcome of a successful pass"""
    requeue: bool = False
    requeue_after: float = 0.0


class Reconciler:
    """Drives one Deployment or DaemonSet towards mirrored images"""

    def __init__(self, cluster, config: ControllerConfig,
                 registry_client: Optional[RegistryClient] = None,
                 backup_fn: Optional[Callable[[str, str, str], str]] = None):
        self.cluster = cluster
        self.config = config
        self.updater = WorkloadUpdater(cluster)
        if backup_fn is None:
            client = registry_client or RegistryClient(
                timeout=config.registry_timeout_seconds,
                insecure_registries=[config.registry] if config.registry_insecure else [],
            )

            def backup_fn(registry, repository, image):
                return backup_image(registry, repository, image, client=client)
        self.backup_fn = backup_fn

    @contextmanager
    def _step(self, item: WorkItem, step: str):
        try:
            yield
        except ReconcileError:
            raise
        except Exception as e:
            raise ReconcileError(item, step, e) from e

    def reconcile(self, item: WorkItem) -> Result:
        if self.config.is_excluded(item.namespace):
            logger.info(f"{item}: namespace {item.namespace} is excluded, skipping")
            return Result()

        adapter = adapter_for(item.kind)
        with self._step(item, STEP_FETCH):
            try:
                obj = adapter.read(self.cluster, item.namespace, item.name)
            except NotFound:
                logger.info(f"{item}: no longer exists, nothing to do")
                return Result()
        current = adapter.snapshot(obj)

        with self._step(item, STEP_ENSURE_SECRET):
            _, created = ensure_secret(
                self.cluster, item.namespace, item.name,
                self.config.registry, self.config.registry_username, self.config.registry_password,
            )
        if created:
            logger.info(f"{item}: created pull secret, requeuing")
            return Result(requeue=True)

        with self._step(item, STEP_ENSURE_SECRET_REF):
            try:
                result = self._ensure_secret_reference(item, current)
            except NotFound:
                logger.info(f"{item}: deleted before the secret reference was set, nothing to do")
                return Result()
        if result is not None:
            return result

        with self._step(item, STEP_BACKUP_IMAGES):
            containers, changed = self._backup_images(item, current)
        if not changed:
            logger.debug(f"{item}: all images mirrored")
            return Result()

        with self._step(item, STEP_COMMIT):
            desired = WorkloadBuilder(current, adapter).with_containers(containers).build()
            try:
                applied = self.updater.apply(desired, current)
            except NotFound:
                logger.info(f"{item}: deleted before images were rewritten, nothing to do")
                return Result()
            if not applied:
                return Result(requeue_after=self.config.not_ready_requeue_seconds)
        logger.info(f"{item}: images rewritten to backup registry")
        return Result()

    def _ensure_secret_reference(self, item: WorkItem, current: WorkloadSnapshot) -> Optional[Result]:
        if item.name in current.pull_secrets:
            return None
        desired = WorkloadBuilder(current).with_pull_secrets(list(current.pull_secrets) + [item.name]).build()
        if not self.updater.apply(desired, current):
            return Result(requeue_after=self.config.not_ready_requeue_seconds)
        logger.info(f"{item}: added imagePullSecret {item.name}, requeuing")
        return Result(requeue=True)

    def _backup_images(self, item: WorkItem, current: WorkloadSnapshot):
        cfg = self.config
        containers: List[Container] = []
        mirrored: Dict[str, str] = {}
        changed = False
        for container in current.containers:
            image = container.image
            if is_mirrored(cfg.registry, image, cfg.repository):
                containers.append(container)
                continue
            if image not in mirrored:
                logger.info(f"{item}: backing up {image}")
                mirrored[image] = self.backup_fn(cfg.registry, cfg.repository, image)
                logger.info(f"{item}: replacing {image} with {mirrored[image]}")
            if mirrored[image] != image:
                changed = True
            containers.append(replace(container, image=mirrored[image]))
        return containers, changed
