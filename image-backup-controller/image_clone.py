"""
Image backup engine.

Copies an image from its source registry into the backup registry under a
deterministic name, talking to both registries over the Distribution v2
HTTP API. Credentials come from the docker config file, the same place
``docker login`` keeps them.
"""

import base64
import hashlib
import json
import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Optional, Tuple
from urllib.parse import urljoin

import requests

from errors import (
    AuthFailure,
    ImageNotFound,
    InvalidReference,
    PermanentConfigError,
    PushFailure,
    RegistryUnreachable,
)

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_REGISTRY_API_HOST = "registry-1.docker.io"
DOCKER_HUB_AUTH_KEY = "https://index.docker.io/v1/"
DOCKER_HUB_ALIASES = {"docker.io", "index.docker.io", "registry-1.docker.io"}
DEFAULT_TAG = "latest"

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
MANIFEST_LIST_V2 = "application/vnd.docker.distribution.manifest.list.v2+json"
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
INDEX_MEDIA_TYPES = {MANIFEST_LIST_V2, OCI_INDEX}
ACCEPTED_MEDIA_TYPES = [OCI_INDEX, MANIFEST_LIST_V2, OCI_MANIFEST, MANIFEST_V2]

BLOB_CHUNK_SIZE = 1024 * 1024
BLOB_SPOOL_SIZE = 16 * 1024 * 1024  # larger blobs spill to disk

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-fA-F0-9]{32,}$")
_HOST_RE = re.compile(r"^[a-zA-Z0-9.-]+(?::[0-9]+)?$")


def digest_tag(digest: str) -> str:
    """Tag that stands in for a digest-only reference, e.g. ``sha256-<hex>``"""
    return digest.replace(":", "-")[:128]


def is_default_registry(registry: str) -> bool:
    """True for an empty registry or any spelling of Docker Hub"""
    if not registry:
        return True
    if "index.docker.io/v1" in registry:
        return True
    return registry.rstrip("/") in DOCKER_HUB_ALIASES


def normalize_registry(registry: str) -> str:
    return DEFAULT_REGISTRY if is_default_registry(registry) else registry.rstrip("/")


@dataclass(frozen=True)
class ImageReference:
    """A parsed, normalised image reference"""
    registry: str
    repository: str
    tag: str
    digest: Optional[str] = None

    @classmethod
    def parse(cls, ref: str) -> "ImageReference":
        if not ref or ref != ref.strip():
            raise InvalidReference(f"invalid image reference {ref!r}")

        name, digest = ref, None
        if "@" in name:
            name, digest = name.split("@", 1)
            if not _DIGEST_RE.match(digest):
                raise InvalidReference(f"invalid digest in {ref!r}")

        tag = None
        slash, colon = name.rfind("/"), name.rfind(":")
        if colon > slash:
            name, tag = name[:colon], name[colon + 1:]
            if not _TAG_RE.match(tag):
                raise InvalidReference(f"invalid tag in {ref!r}")
        if tag is None:
            tag = digest_tag(digest) if digest else DEFAULT_TAG

        registry, repository = DEFAULT_REGISTRY, name
        first, sep, rest = name.partition("/")
        if sep and ("." in first or ":" in first or first == "localhost"):
            if not _HOST_RE.match(first):
                raise InvalidReference(f"invalid registry in {ref!r}")
            registry, repository = normalize_registry(first), rest

        if not repository:
            raise InvalidReference(f"missing repository in {ref!r}")
        for component in repository.split("/"):
            if not _COMPONENT_RE.match(component):
                raise InvalidReference(f"invalid repository {repository!r} in {ref!r}")
        if registry == DEFAULT_REGISTRY and "/" not in repository:
            repository = f"library/{repository}"

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def context(self) -> str:
        return f"{self.registry}/{self.repository}"

    @property
    def identifier(self) -> str:
        """What to ask the registry for: the digest when pinned, else the tag"""
        return self.digest or self.tag

    def with_digest(self, digest: str) -> "ImageReference":
        return replace(self, digest=digest)

    def __str__(self):
        s = f"{self.context}:{self.tag}"
        return f"{s}@{self.digest}" if self.digest else s


def _already_under(source: ImageReference, registry: str, repository: str) -> bool:
    prefix = repository.strip("/") + "/"
    if source.registry != normalize_registry(registry):
        return False
    if not source.repository.startswith(prefix):
        return False
    return "/" not in source.repository[len(prefix):]


def rename(source, registry: str, repository: str) -> str:
    """Compute the backup reference for ``source``.

    The source registry host is dropped, the remaining path is flattened with
    ``-`` and placed under ``registry/repository``. For Docker Hub (or an
    empty registry) the registry segment is left out. A reference that
    already lives directly under the destination maps to itself.
    """
    if not isinstance(source, ImageReference):
        source = ImageReference.parse(source)
    repository = repository.strip("/")

    if _already_under(source, registry, repository):
        flat = source.repository[len(repository) + 1:]
    else:
        flat = source.repository.replace("/", "-")

    if is_default_registry(registry):
        return f"{repository}/{flat}:{source.tag}"
    return f"{registry.rstrip('/')}/{repository}/{flat}:{source.tag}"


def is_mirrored(registry: str, image: str, repository: str = "") -> bool:
    """Cheap check for whether ``image`` already points at the backup registry.

    For a named registry this is a substring test on the host. Docker Hub
    has no distinguishing host, so there the image must sit under
    ``repository/`` instead; with no repository nothing counts as mirrored.
    """
    if not is_default_registry(registry):
        return registry in image
    if not repository:
        return False
    try:
        ref = ImageReference.parse(image)
    except InvalidReference:
        return False
    return _already_under(ref, registry, repository)


def auth_key(registry: str) -> str:
    return DOCKER_HUB_AUTH_KEY if is_default_registry(registry) else registry


def _host_of(key: str) -> str:
    host = re.sub(r"^[a-z]+://", "", key)
    return host.split("/", 1)[0]


class DockerCredentialStore:
    """Credentials kept in the ``auths`` section of a docker config file"""

    def __init__(self, config_dir: Optional[str] = None):
        config_dir = config_dir or os.getenv("DOCKER_CONFIG") or Path.home() / ".docker"
        self.path = Path(config_dir) / "config.json"

    def _load(self) -> Dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                return json.load(f)
        except ValueError as e:
            raise PermanentConfigError(f"unable to load config {self.path}: {e}") from e

    def get(self, registry: str) -> Optional[Tuple[str, str]]:
        auths = self._load().get("auths", {})
        key = auth_key(registry)
        entry = auths.get(key)
        if entry is None:
            host = _host_of(key)
            for k, v in auths.items():
                if normalize_registry(_host_of(k)) == normalize_registry(host):
                    entry = v
                    break
        if not entry:
            return None
        if entry.get("username"):
            return entry["username"], entry.get("password", "")
        if entry.get("auth"):
            username, _, password = base64.b64decode(entry["auth"]).decode().partition(":")
            return username, password
        return None

    def store(self, registry: str, username: str, password: str):
        data = self._load()
        auth = base64.b64encode(f"{username}:{password}".encode()).decode()
        data.setdefault("auths", {})[auth_key(registry)] = {"auth": auth}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump(data, f, indent=2)


def registry_login(registry: str, username: str, password: str,
                   store: Optional[DockerCredentialStore] = None) -> DockerCredentialStore:
    """Save registry credentials so later pulls and pushes can use them"""
    if not username and not password:
        raise PermanentConfigError("username and password required")
    store = store or DockerCredentialStore()
    store.store(registry, username, password)
    logger.info(f"Logged in to {registry or 'Docker Hub'} via {store.path}")
    return store


def _parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    scheme, _, params = header.partition(" ")
    return scheme.lower(), dict(re.findall(r'(\w+)="([^"]*)"', params))


class RegistryClient:
    """Client for the Distribution v2 registry API.

    Safe to share between worker threads: each thread gets its own
    ``requests.Session`` unless one is passed in, and the token cache is
    guarded by a lock.
    """

    def __init__(self, credentials: Optional[DockerCredentialStore] = None,
                 timeout: float = 60.0, insecure_registries: Iterable[str] = (),
                 session: Optional[requests.Session] = None):
        self.credentials = credentials or DockerCredentialStore()
        self.timeout = timeout
        self.insecure_registries = {normalize_registry(r) for r in insecure_registries if r}
        self._session = session
        self._local = threading.local()
        self._auth_lock = threading.Lock()
        self._auth_headers: Dict[Tuple[str, str, str], str] = {}

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        if not hasattr(self._local, "session"):
            self._local.session = requests.Session()
        return self._local.session

    def _base_url(self, registry: str) -> str:
        host = DEFAULT_REGISTRY_API_HOST if registry == DEFAULT_REGISTRY else registry
        scheme = "http" if registry in self.insecure_registries else "https"
        return f"{scheme}://{host}/v2"

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise RegistryUnreachable(f"{method} {url}: {e}") from e

    def _authenticate(self, registry: str, repository: str, actions: str, challenge: str) -> str:
        scheme, params = _parse_challenge(challenge)
        creds = self.credentials.get(registry)
        if scheme == "basic":
            if not creds:
                raise AuthFailure(f"{registry} requires credentials and none are stored")
            return "Basic " + base64.b64encode(f"{creds[0]}:{creds[1]}".encode()).decode()
        if scheme != "bearer" or "realm" not in params:
            raise AuthFailure(f"unsupported auth challenge from {registry}: {challenge}")

        query = {"scope": f"repository:{repository}:{actions}"}
        if "service" in params:
            query["service"] = params["service"]
        resp = self._send("GET", params["realm"], params=query, auth=creds)
        if resp.status_code in (401, 403):
            raise AuthFailure(f"token request to {registry} rejected ({resp.status_code})")
        if resp.status_code != 200:
            raise RegistryUnreachable(f"token request to {registry} failed ({resp.status_code})")
        body = resp.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise AuthFailure(f"no token received from {registry}")
        return f"Bearer {token}"

    def _request(self, method: str, ref: ImageReference, path: str, actions: str = "pull",
                 url: Optional[str] = None, **kwargs) -> requests.Response:
        url = url or f"{self._base_url(ref.registry)}/{ref.repository}/{path}"
        headers = dict(kwargs.pop("headers", {}))
        key = (ref.registry, ref.repository, actions)
        with self._auth_lock:
            cached = self._auth_headers.get(key)
        if cached:
            headers["Authorization"] = cached

        resp = self._send(method, url, headers=headers, **kwargs)
        if resp.status_code == 401 and "WWW-Authenticate" in resp.headers:
            resp.close()
            authorization = self._authenticate(
                ref.registry, ref.repository, actions, resp.headers["WWW-Authenticate"]
            )
            with self._auth_lock:
                self._auth_headers[key] = authorization
            headers["Authorization"] = authorization
            if hasattr(kwargs.get("data"), "seek"):
                kwargs["data"].seek(0)
            resp = self._send(method, url, headers=headers, **kwargs)

        if resp.status_code in (401, 403):
            raise AuthFailure(f"{method} {url}: access denied ({resp.status_code})")
        if resp.status_code >= 500:
            raise RegistryUnreachable(f"{method} {url}: server error {resp.status_code}")
        return resp

    def get_manifest(self, ref: ImageReference) -> Tuple[bytes, str, str]:
        resp = self._request(
            "GET", ref, f"manifests/{ref.identifier}",
            headers={"Accept": ", ".join(ACCEPTED_MEDIA_TYPES)},
        )
        if resp.status_code == 404:
            raise ImageNotFound(f"manifest for {ref} not found")
        if resp.status_code != 200:
            raise RegistryUnreachable(f"fetching manifest for {ref} failed ({resp.status_code})")
        media_type = resp.headers.get("Content-Type", "").split(";")[0].strip()
        if not media_type:
            media_type = json.loads(resp.content).get("mediaType", MANIFEST_V2)
        digest = resp.headers.get("Docker-Content-Digest") or _digest(resp.content)
        return resp.content, media_type, digest

    def blob_exists(self, ref: ImageReference, digest: str) -> bool:
        resp = self._request("HEAD", ref, f"blobs/{digest}", actions="pull,push")
        return resp.status_code == 200

    def get_blob(self, ref: ImageReference, digest: str, out: BinaryIO):
        """Stream a blob into ``out``, verifying its digest on the way"""
        resp = self._request("GET", ref, f"blobs/{digest}", stream=True)
        try:
            if resp.status_code == 404:
                raise ImageNotFound(f"blob {digest} of {ref} not found")
            if resp.status_code != 200:
                raise RegistryUnreachable(f"fetching blob {digest} of {ref} failed ({resp.status_code})")
            hasher = hashlib.sha256()
            try:
                for chunk in resp.iter_content(BLOB_CHUNK_SIZE):
                    hasher.update(chunk)
                    out.write(chunk)
            except requests.exceptions.RequestException as e:
                raise RegistryUnreachable(f"reading blob {digest} of {ref}: {e}") from e
        finally:
            resp.close()
        if "sha256:" + hasher.hexdigest() != digest:
            raise RegistryUnreachable(f"blob {digest} of {ref} failed digest verification")

    def mount_blob(self, ref: ImageReference, digest: str, from_repository: str) -> bool:
        resp = self._request(
            "POST", ref, "blobs/uploads/", actions="pull,push",
            params={"mount": digest, "from": from_repository},
        )
        return resp.status_code == 201

    def upload_blob(self, ref: ImageReference, digest: str, data: BinaryIO):
        resp = self._request("POST", ref, "blobs/uploads/", actions="pull,push")
        if resp.status_code != 202 or "Location" not in resp.headers:
            raise PushFailure(f"starting upload of {digest} to {ref.context} failed ({resp.status_code})")
        location = urljoin(resp.url or self._base_url(ref.registry) + "/", resp.headers["Location"])
        resp = self._request(
            "PUT", ref, "", actions="pull,push", url=location,
            params={"digest": digest}, data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        if resp.status_code != 201:
            raise PushFailure(f"uploading {digest} to {ref.context} failed ({resp.status_code})")

    def put_manifest(self, ref: ImageReference, reference: str, body: bytes, media_type: str):
        resp = self._request(
            "PUT", ref, f"manifests/{reference}", actions="pull,push",
            data=body, headers={"Content-Type": media_type},
        )
        if resp.status_code not in (200, 201):
            raise PushFailure(f"pushing manifest {ref.context}:{reference} failed ({resp.status_code})")


def _digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


def _copy_blobs(client: RegistryClient, src: ImageReference, dest: ImageReference, manifest: Dict):
    descriptors = [manifest["config"]] if "config" in manifest else []
    descriptors += manifest.get("layers", [])
    for desc in descriptors:
        digest = desc["digest"]
        if client.blob_exists(dest, digest):
            continue
        if src.registry == dest.registry and client.mount_blob(dest, digest, src.repository):
            continue
        with tempfile.SpooledTemporaryFile(max_size=BLOB_SPOOL_SIZE) as buf:
            client.get_blob(src, digest, buf)
            buf.seek(0)
            client.upload_blob(dest, digest, buf)


def copy_image(client: RegistryClient, src: ImageReference, dest: ImageReference):
    body, media_type, digest = client.get_manifest(src)
    manifest = json.loads(body)
    if media_type in INDEX_MEDIA_TYPES:
        for child in manifest.get("manifests", []):
            child_body, child_type, _ = client.get_manifest(src.with_digest(child["digest"]))
            _copy_blobs(client, src, dest, json.loads(child_body))
            client.put_manifest(dest, child["digest"], child_body, child_type)
    else:
        _copy_blobs(client, src, dest, manifest)
    client.put_manifest(dest, dest.tag, body, media_type)
    logger.debug(f"Copied {src} ({digest}) to {dest}")


def backup_image(registry: str, repository: str, source: str,
                 client: Optional[RegistryClient] = None) -> str:
    """Copy ``source`` into the backup registry and return its new reference"""
    src = ImageReference.parse(source)
    destination = rename(src, registry, repository)
    client = client or RegistryClient()
    copy_image(client, src, ImageReference.parse(destination))
    return destination
