import base64
import json
from unittest.mock import MagicMock

import pytest

from errors import ClusterAPIError, NotFound, SecretCreateFailed, UpdateConflict
from image_clone import DOCKER_HUB_AUTH_KEY
from pull_secrets import (
    DOCKER_CONFIG_JSON_KEY,
    DOCKER_CONFIG_JSON_TYPE,
    build_docker_config_json,
    ensure_secret,
    new_docker_config_secret,
)


class TestDockerConfigJSON:

    def test_payload_layout(self):
        payload = json.loads(build_docker_config_json("backup.example.com", "robot", "s3cret"))

        assert payload == {
            "auths": {
                "backup.example.com": {
                    "username": "robot",
                    "password": "s3cret",
                    "auth": base64.b64encode(b"robot:s3cret").decode(),
                }
            }
        }

    def test_username_and_password_are_kept_distinct(self):
        entry = json.loads(build_docker_config_json("r.io", "alice", "hunter2"))["auths"]["r.io"]
        assert entry["username"] == "alice"
        assert entry["password"] == "hunter2"

    def test_empty_registry_renders_docker_hub_key(self):
        payload = json.loads(build_docker_config_json("", "u", "p"))
        assert list(payload["auths"]) == [DOCKER_HUB_AUTH_KEY]

    def test_secret_object(self):
        secret = new_docker_config_secret("default", "web", "r.io", "u", "p")

        assert secret.type == DOCKER_CONFIG_JSON_TYPE
        assert (secret.metadata.namespace, secret.metadata.name) == ("default", "web")
        decoded = base64.b64decode(secret.data[DOCKER_CONFIG_JSON_KEY])
        assert decoded == build_docker_config_json("r.io", "u", "p")


class TestEnsureSecret:

    def test_existing_secret_is_returned_untouched(self, cluster):
        existing = new_docker_config_secret("default", "web", "old.io", "x", "y")
        cluster.secrets[("default", "web")] = existing

        secret, created = ensure_secret(cluster, "default", "web", "r.io", "u", "p")

        assert created is False
        assert secret.data == existing.data
        assert cluster.writes == []

    def test_missing_secret_is_created_once(self, cluster):
        secret, created = ensure_secret(cluster, "default", "web", "r.io", "u", "p")

        assert created is True
        assert cluster.writes == [("create", "secret", ("default", "web"))]
        assert secret.metadata.name == "web"

    def test_lost_create_race_reads_winner(self):
        winner = new_docker_config_secret("default", "web", "r.io", "u", "p")
        cluster = MagicMock()
        cluster.read_secret.side_effect = [NotFound("gone"), winner]
        cluster.create_secret.side_effect = UpdateConflict("already exists")

        secret, created = ensure_secret(cluster, "default", "web", "r.io", "u", "p")

        assert secret is winner
        assert created is False

    def test_api_error_on_create_is_secret_create_failed(self):
        cluster = MagicMock()
        cluster.read_secret.side_effect = NotFound("gone")
        cluster.create_secret.side_effect = ClusterAPIError("boom")

        with pytest.raises(SecretCreateFailed):
            ensure_secret(cluster, "default", "web", "r.io", "u", "p")

    def test_read_errors_propagate(self):
        cluster = MagicMock()
        cluster.read_secret.side_effect = ClusterAPIError("timeout")

        with pytest.raises(ClusterAPIError):
            ensure_secret(cluster, "default", "web", "r.io", "u", "p")
        cluster.create_secret.assert_not_called()
