"""
Workload capability interface.

Deployments and DaemonSets are reconciled by the same state machine; the
differences between them (which API to call, how readiness is computed)
live in one adapter per kind. Live objects are never edited in place:
a ``WorkloadSnapshot`` is taken, and ``WorkloadBuilder`` produces a new
desired object from a deep copy of it.
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from kubernetes import client

from errors import ClusterAPIError, UpdateConflict, UpdateFailed

logger = logging.getLogger(__name__)


class WorkloadKind(Enum):
    DEPLOYMENT = "Deployment"
    DAEMON_SET = "DaemonSet"


@dataclass(frozen=True)
class WorkItem:
    """Identity of one reconcilable object"""
    namespace: str
    name: str
    kind: WorkloadKind

    def __str__(self):
        return f"{self.kind.value}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class Container:
    name: str
    image: str
    init: bool = False


@dataclass(frozen=True)
class WorkloadSnapshot:
    """Read-only view of a workload as observed in the cluster"""
    kind: WorkloadKind
    namespace: str
    name: str
    containers: Tuple[Container, ...]
    pull_secrets: Tuple[str, ...]
    ready: bool
    obj: Any = field(compare=False, repr=False)

    @property
    def images(self) -> List[str]:
        return [c.image for c in self.containers]


class WorkloadAdapter:
    """Operations the reconciler needs from a workload kind"""
    kind: WorkloadKind

    def read(self, cluster, namespace: str, name: str):
        raise NotImplementedError

    def replace(self, cluster, obj):
        raise NotImplementedError

    def is_ready(self, obj) -> bool:
        raise NotImplementedError

    def _pod_spec(self, obj):
        return obj.spec.template.spec

    def list_containers(self, obj) -> Tuple[Container, ...]:
        pod_spec = self._pod_spec(obj)
        init = tuple(Container(c.name, c.image, init=True) for c in (pod_spec.init_containers or []))
        return init + tuple(Container(c.name, c.image) for c in (pod_spec.containers or []))

    def set_containers(self, obj, containers: Sequence[Container]):
        images = {(c.init, c.name): c.image for c in containers}
        pod_spec = self._pod_spec(obj)
        for init, group in ((True, pod_spec.init_containers), (False, pod_spec.containers)):
            for c in group or []:
                c.image = images.get((init, c.name), c.image)

    def list_pull_secret_refs(self, obj) -> Tuple[str, ...]:
        return tuple(ref.name for ref in (self._pod_spec(obj).image_pull_secrets or []))

    def set_pull_secret_ref(self, obj, names: Sequence[str]):
        self._pod_spec(obj).image_pull_secrets = [client.V1LocalObjectReference(name=n) for n in names]

    def snapshot(self, obj) -> WorkloadSnapshot:
        return WorkloadSnapshot(
            kind=self.kind,
            namespace=obj.metadata.namespace,
            name=obj.metadata.name,
            containers=self.list_containers(obj),
            pull_secrets=self.list_pull_secret_refs(obj),
            ready=self.is_ready(obj),
            obj=obj,
        )


class DeploymentAdapter(WorkloadAdapter):
    kind = WorkloadKind.DEPLOYMENT

    def read(self, cluster, namespace, name):
        return cluster.read_deployment(namespace, name)

    def replace(self, cluster, obj):
        return cluster.replace_deployment(obj)

    def is_ready(self, obj) -> bool:
        desired = obj.spec.replicas if obj.spec.replicas is not None else 1
        ready = (obj.status.ready_replicas or 0) if obj.status else 0
        return desired > 0 and desired == ready


class DaemonSetAdapter(WorkloadAdapter):
    kind = WorkloadKind.DAEMON_SET

    def read(self, cluster, namespace, name):
        return cluster.read_daemon_set(namespace, name)

    def replace(self, cluster, obj):
        return cluster.replace_daemon_set(obj)

    def is_ready(self, obj) -> bool:
        if not obj.status:
            return False
        desired = obj.status.desired_number_scheduled or 0
        return desired > 0 and desired == (obj.status.number_ready or 0)


ADAPTERS: Dict[WorkloadKind, WorkloadAdapter] = {
    WorkloadKind.DEPLOYMENT: DeploymentAdapter(),
    WorkloadKind.DAEMON_SET: DaemonSetAdapter(),
}


def adapter_for(kind: WorkloadKind) -> WorkloadAdapter:
    return ADAPTERS[kind]


class WorkloadBuilder:
    """Builds a new desired object from a snapshot without touching the original"""

    def __init__(self, snapshot: WorkloadSnapshot, adapter: Optional[WorkloadAdapter] = None):
        self.snapshot = snapshot
        self.adapter = adapter or adapter_for(snapshot.kind)
        self._containers: Optional[Sequence[Container]] = None
        self._pull_secrets: Optional[Sequence[str]] = None

    def with_containers(self, containers: Sequence[Container]) -> "WorkloadBuilder":
        self._containers = containers
        return self

    def with_pull_secrets(self, names: Sequence[str]) -> "WorkloadBuilder":
        self._pull_secrets = names
        return self

    def build(self):
        obj = copy.deepcopy(self.snapshot.obj)
        if self._containers is not None:
            self.adapter.set_containers(obj, self._containers)
        if self._pull_secrets is not None:
            self.adapter.set_pull_secret_ref(obj, self._pull_secrets)
        return obj


class WorkloadUpdater:
    """Submits desired workload state, but only for ready workloads"""

    def __init__(self, cluster):
        self.cluster = cluster

    def apply(self, desired, current: WorkloadSnapshot) -> bool:
        """Replace the workload with ``desired``.

        Returns False without writing when ``current`` is not ready.
        """
        if not current.ready:
            logger.info(f"{current.kind.value} {current.namespace}/{current.name} is not ready, deferring update")
            return False
        adapter = adapter_for(current.kind)
        try:
            adapter.replace(self.cluster, desired)
        except UpdateConflict:
            raise
        except ClusterAPIError as e:
            raise UpdateFailed(f"updating {current.kind.value} {current.namespace}/{current.name}: {e}") from e
        logger.info(f"Updated {current.kind.value} {current.namespace}/{current.name}")
        return True
