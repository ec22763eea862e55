"""
Shared fixtures for controller tests.

Provides an in-memory stand-in for the cluster API that records every write,
plus builders for real ``kubernetes.client`` workload models.
"""

from __future__ import annotations

import copy

import pytest
from kubernetes import client

from errors import NotFound, UpdateConflict
from settings import ControllerConfig


def make_deployment(name="web", namespace="default", images=("quay.io/org/app:v2",),
                    replicas=1, ready_replicas=1, pull_secrets=(), init_images=()):
    labels = {"app": name}
    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, resource_version="1"),
        spec=client.V1DeploymentSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    containers=[client.V1Container(name=f"c{i}", image=img) for i, img in enumerate(images)],
                    init_containers=[
                        client.V1Container(name=f"init{i}", image=img) for i, img in enumerate(init_images)
                    ] or None,
                    image_pull_secrets=[client.V1LocalObjectReference(name=s) for s in pull_secrets] or None,
                ),
            ),
        ),
        status=client.V1DeploymentStatus(ready_replicas=ready_replicas),
    )


def make_daemon_set(name="agent", namespace="default", images=("docker.io/library/nginx:1.19",),
                    desired=2, ready=2, pull_secrets=()):
    labels = {"app": name}
    return client.V1DaemonSet(
        api_version="apps/v1",
        kind="DaemonSet",
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, resource_version="1"),
        spec=client.V1DaemonSetSpec(
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=labels),
                spec=client.V1PodSpec(
                    containers=[client.V1Container(name=f"c{i}", image=img) for i, img in enumerate(images)],
                    image_pull_secrets=[client.V1LocalObjectReference(name=s) for s in pull_secrets] or None,
                ),
            ),
        ),
        status=client.V1DaemonSetStatus(
            current_number_scheduled=desired,
            desired_number_scheduled=desired,
            number_misscheduled=0,
            number_ready=ready,
        ),
    )


class FakeCluster:
    """Dict-backed cluster API that records writes"""

    def __init__(self):
        self.deployments = {}
        self.daemon_sets = {}
        self.secrets = {}
        self.writes = []
        self.conflict_on_replace = False
        self.missing_on_replace = False

    @staticmethod
    def _key(obj):
        return obj.metadata.namespace, obj.metadata.name

    def add(self, obj):
        store = self.deployments if isinstance(obj, client.V1Deployment) else self.daemon_sets
        store[self._key(obj)] = obj
        return obj

    def _read(self, store, namespace, name, what):
        if (namespace, name) not in store:
            raise NotFound(f"{what} {namespace}/{name} not found")
        return copy.deepcopy(store[(namespace, name)])

    def _replace(self, store, obj, what):
        if self.conflict_on_replace:
            raise UpdateConflict(f"{what}: conflict")
        if self.missing_on_replace:
            raise NotFound(f"{what} {obj.metadata.namespace}/{obj.metadata.name} not found")
        self.writes.append(("replace", what, self._key(obj)))
        store[self._key(obj)] = copy.deepcopy(obj)
        return obj

    def read_deployment(self, namespace, name):
        return self._read(self.deployments, namespace, name, "deployment")

    def replace_deployment(self, obj):
        return self._replace(self.deployments, obj, "deployment")

    def read_daemon_set(self, namespace, name):
        return self._read(self.daemon_sets, namespace, name, "daemonset")

    def replace_daemon_set(self, obj):
        return self._replace(self.daemon_sets, obj, "daemonset")

    def read_secret(self, namespace, name):
        return self._read(self.secrets, namespace, name, "secret")

    def create_secret(self, secret):
        self.writes.append(("create", "secret", self._key(secret)))
        self.secrets[self._key(secret)] = secret
        return secret


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def config():
    return ControllerConfig(
        registry="backup.example.com",
        repository="mirror",
        registry_username="robot",
        registry_password="s3cret",
        excluded_namespaces=frozenset({"kube-system"}),
        not_ready_requeue_seconds=10.0,
    )
