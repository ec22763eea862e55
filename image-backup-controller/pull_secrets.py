import base64
import json
import logging
from typing import Tuple

from kubernetes import client

from errors import ClusterAPIError, NotFound, SecretCreateFailed, UpdateConflict
from image_clone import auth_key

logger = logging.getLogger(__name__)

DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"


def encode_docker_config_field_auth(username: str, password: str) -> str:
    return base64.b64encode(f"{username}:{password}".encode()).decode()


def build_docker_config_json(registry: str, username: str, password: str) -> bytes:
    """Serialize a docker config.json with a single auths entry"""
    entry = {
        "username": username,
        "password": password,
        "auth": encode_docker_config_field_auth(username, password),
    }
    return json.dumps({"auths": {auth_key(registry): entry}}, separators=(",", ":")).encode("utf-8")


def new_docker_config_secret(namespace: str, name: str, registry: str,
                             username: str, password: str) -> client.V1Secret:
    content = build_docker_config_json(registry, username, password)
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        type=DOCKER_CONFIG_JSON_TYPE,
        data={DOCKER_CONFIG_JSON_KEY: base64.b64encode(content).decode()},
    )


def ensure_secret(cluster, namespace: str, name: str, registry: str,
                  username: str, password: str) -> Tuple[client.V1Secret, bool]:
    """Return the pull secret for a workload, creating it if absent.

    Returns ``(secret, created)``. An existing secret is returned as is, it
    is never updated.
    """
    try:
        return cluster.read_secret(namespace, name), False
    except NotFound:
        pass

    secret = new_docker_config_secret(namespace, name, registry, username, password)
    logger.info(f"Creating pull secret {namespace}/{name} for {registry or 'Docker Hub'}")
    try:
        return cluster.create_secret(secret), True
    except UpdateConflict:
        # someone else created it between our read and create
        return cluster.read_secret(namespace, name), False
    except ClusterAPIError as e:
        raise SecretCreateFailed(f"creating secret {namespace}/{name}: {e}") from e
