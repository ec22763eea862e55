import logging
from typing import Any, Callable, Optional

import urllib3
from kubernetes import client, config
from kubernetes.client.rest import ApiException

from errors import ClusterAPIError, NotFound, UpdateConflict

logger = logging.getLogger(__name__)


def load_kube_config(kubeconfig: Optional[str] = None):
    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config(config_file=kubeconfig)


def translate_api_exception(e: ApiException, what: str) -> Exception:
    if e.status == 404:
        return NotFound(f"{what} not found")
    if e.status == 409:
        return UpdateConflict(f"{what}: conflict: {e.reason}")
    err = ClusterAPIError(f"{what}: API error {e.status}: {e.reason}")
    err.status = e.status
    return err


class ClusterClient:
    """Thin wrapper over the Kubernetes API with timeouts and error mapping"""

    def __init__(self, api_client: Optional[client.ApiClient] = None, timeout: float = 30.0):
        self.v1 = client.CoreV1Api(api_client)
        self.apps_v1 = client.AppsV1Api(api_client)
        self.timeout = timeout

    def _call(self, what: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return fn(*args, _request_timeout=self.timeout, **kwargs)
        except ApiException as e:
            raise translate_api_exception(e, what) from e
        except (urllib3.exceptions.HTTPError, OSError) as e:
            raise ClusterAPIError(f"{what}: {e}") from e

    def read_deployment(self, namespace: str, name: str):
        return self._call(
            f"deployment {namespace}/{name}",
            self.apps_v1.read_namespaced_deployment, name=name, namespace=namespace,
        )

    def replace_deployment(self, deployment):
        meta = deployment.metadata
        return self._call(
            f"deployment {meta.namespace}/{meta.name}",
            self.apps_v1.replace_namespaced_deployment,
            name=meta.name, namespace=meta.namespace, body=deployment,
        )

    def read_daemon_set(self, namespace: str, name: str):
        return self._call(
            f"daemonset {namespace}/{name}",
            self.apps_v1.read_namespaced_daemon_set, name=name, namespace=namespace,
        )

    def replace_daemon_set(self, daemon_set):
        meta = daemon_set.metadata
        return self._call(
            f"daemonset {meta.namespace}/{meta.name}",
            self.apps_v1.replace_namespaced_daemon_set,
            name=meta.name, namespace=meta.namespace, body=daemon_set,
        )

    def read_secret(self, namespace: str, name: str):
        return self._call(
            f"secret {namespace}/{name}",
            self.v1.read_namespaced_secret, name=name, namespace=namespace,
        )

    def create_secret(self, secret):
        meta = secret.metadata
        return self._call(
            f"secret {meta.namespace}/{meta.name}",
            self.v1.create_namespaced_secret, namespace=meta.namespace, body=secret,
        )

    def list_function(self, kind: str) -> Callable[..., Any]:
        """Cluster-wide list call for a workload kind, usable with watch.Watch"""
        if kind == "Deployment":
            return self.apps_v1.list_deployment_for_all_namespaces
        if kind == "DaemonSet":
            return self.apps_v1.list_daemon_set_for_all_namespaces
        raise ValueError(f"unsupported kind {kind}")


def create_cluster_client(kubeconfig: Optional[str] = None, timeout: float = 30.0) -> ClusterClient:
    load_kube_config(kubeconfig)
    logger.info("Loaded Kubernetes configuration")
    return ClusterClient(timeout=timeout)
