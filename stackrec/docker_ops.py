from __future__ import annotations

import io
import posixpath
import re
import tarfile
import time
from contextlib import contextmanager
from threading import Lock
from typing import Any, Callable, Iterable, Iterator

import docker
import requests
from docker.errors import APIError, DockerException
from docker.errors import NotFound as DockerNotFound

from .errors import AdapterError, NotFound, RuntimeUnavailable, Unsupported
from .graph import FileUpload, Kind, content_digest
from .settings import settings


RESOURCE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,127}$")

LABEL_STACK = "stackrec.stack"
LABEL_RESOURCE = "stackrec.resource"


def validate_resource_name(name: str) -> None:
    if not RESOURCE_NAME_RE.match(name):
        raise ValueError(
            f"Invalid docker object name '{name}'. Use letters/numbers and _.- starting with a letter or number (max 128 chars)."
        )


def validate_file_path(path: str) -> None:
    if not path.startswith("/"):
        raise ValueError(f"File path '{path}' must be absolute.")
    if ".." in path.split("/") or path.endswith("/"):
        raise ValueError(f"File path '{path}' must name a file (no '..', no trailing '/').")


@contextmanager
def docker_errors(what: str) -> Iterator[None]:
    """Translate docker SDK errors into the reconciler's taxonomy."""
    try:
        yield
    except DockerNotFound as e:
        raise NotFound(f"{what}: {e}") from e
    except APIError as e:
        if e.is_server_error() and e.status_code in {502, 503, 504}:
            raise RuntimeUnavailable(f"{what}: {e}") from e
        raise AdapterError(f"{what}: {e}") from e
    except (DockerException, requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise RuntimeUnavailable(f"{what}: {e}") from e


class DockerConnection:
    """Lazily created docker client shared by the adapters of one run."""

    def __init__(self, factory: Callable[[], Any] | None = None) -> None:
        self._factory = factory or docker.from_env
        self._client: Any = None
        self._lock = Lock()

    def client(self) -> Any:
        with self._lock:
            if self._client is None:
                with docker_errors("connect to docker"):
                    self._client = self._factory()
            return self._client


class RuntimeAdapter:
    """Translates abstract resource operations into container engine calls."""

    kind: Kind
    updatable: frozenset[str] = frozenset()

    def __init__(self, conn: DockerConnection, stack: str) -> None:
        self.conn = conn
        self.stack = stack

    def labels(self, name: str) -> dict[str, str]:
        return {LABEL_STACK: self.stack, LABEL_RESOURCE: name}

    def supports_update(self, diff: Iterable[str]) -> bool:
        keys = set(diff)
        return bool(keys) and keys <= self.updatable

    def create(self, name: str, props: dict[str, Any], files: Iterable[FileUpload] = ()) -> dict[str, Any]:
        raise NotImplementedError

    def read(self, resource_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def update(
        self, resource_id: str, props: dict[str, Any], diff: Iterable[str], files: Iterable[FileUpload] = ()
    ) -> dict[str, Any]:
        raise Unsupported(f"{self.kind.value} resources cannot be updated in place.")

    def delete(self, resource_id: str, props: dict[str, Any] | None = None) -> bool:
        raise NotImplementedError

    def remember_files(self, resource_id: str, digests: dict[str, str]) -> None:
        """Seed known file digests from observed state (containers only)."""


class NetworkAdapter(RuntimeAdapter):
    kind = Kind.NETWORK

    def create(self, name: str, props: dict[str, Any], files: Iterable[FileUpload] = ()) -> dict[str, Any]:
        net_name = props.get("name", name)
        validate_resource_name(net_name)
        c = self.conn.client()
        try:
            with docker_errors(f"get network {net_name}"):
                net = c.networks.get(net_name)
        except NotFound:
            with docker_errors(f"create network {net_name}"):
                net = c.networks.create(
                    net_name,
                    driver=props.get("driver", "bridge"),
                    labels=self.labels(name),
                )
        return {"id": net.id, "name": net.name}

    def read(self, resource_id: str) -> dict[str, Any]:
        with docker_errors(f"read network {resource_id}"):
            net = self.conn.client().networks.get(resource_id)
        return {"id": net.id, "name": net.name}

    def delete(self, resource_id: str, props: dict[str, Any] | None = None) -> bool:
        try:
            with docker_errors(f"remove network {resource_id}"):
                self.conn.client().networks.get(resource_id).remove()
        except NotFound:
            return False
        return True


def split_image_name(image: str) -> tuple[str, str]:
    """``redis:7-alpine`` -> (``redis``, ``7-alpine``); registry ports are not tags."""
    repo, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, "latest"
    return repo, tag


class ImageAdapter(RuntimeAdapter):
    kind = Kind.IMAGE
    updatable = frozenset({"keep_locally"})

    def create(self, name: str, props: dict[str, Any], files: Iterable[FileUpload] = ()) -> dict[str, Any]:
        image_name = props["name"]
        c = self.conn.client()
        image = None
        if not settings.always_pull:
            try:
                with docker_errors(f"inspect image {image_name}"):
                    image = c.images.get(image_name)
            except NotFound:
                image = None
        if image is None:
            repo, tag = split_image_name(image_name)
            with docker_errors(f"pull image {image_name}"):
                image = c.images.pull(repo, tag=tag)
        return {"id": image.id, "name": image_name}

    def read(self, resource_id: str) -> dict[str, Any]:
        with docker_errors(f"read image {resource_id}"):
            image = self.conn.client().images.get(resource_id)
        return {"id": image.id, "tags": list(image.tags or [])}

    def update(
        self, resource_id: str, props: dict[str, Any], diff: Iterable[str], files: Iterable[FileUpload] = ()
    ) -> dict[str, Any]:
        if not self.supports_update(diff):
            raise Unsupported("Only keep_locally can change without pulling a new image.")
        # keep_locally only matters when the image is deleted.
        return {"id": resource_id, "name": props["name"]}

    def delete(self, resource_id: str, props: dict[str, Any] | None = None) -> bool:
        if props and props.get("keep_locally"):
            return True
        try:
            with docker_errors(f"remove image {resource_id}"):
                self.conn.client().images.remove(resource_id)
        except NotFound:
            return False
        return True


def port_bindings(ports: Iterable[dict[str, Any]]) -> dict[str, int]:
    out: dict[str, int] = {}
    for p in ports:
        proto = p.get("protocol", "tcp")
        out[f"{int(p['internal'])}/{proto}"] = int(p["external"])
    return out


def env_dict(env: Any) -> dict[str, str]:
    if not env:
        return {}
    if isinstance(env, dict):
        return {str(k): str(v) for k, v in env.items()}
    out: dict[str, str] = {}
    for item in env:
        key, _, value = str(item).partition("=")
        out[key] = value
    return out


def tar_single_file(filename: str, content: bytes) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo(name=filename)
        info.size = len(content)
        info.mode = 0o644
        info.mtime = int(time.time())
        tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class ContainerAdapter(RuntimeAdapter):
    kind = Kind.CONTAINER
    updatable = frozenset({"files"})

    def __init__(self, conn: DockerConnection, stack: str) -> None:
        super().__init__(conn, stack)
        self._digests: dict[tuple[str, str], str] = {}
        self._digest_lock = Lock()
        self.writes = 0

    def create(self, name: str, props: dict[str, Any], files: Iterable[FileUpload] = ()) -> dict[str, Any]:
        """Create the container, inject its files, then start it.

        Files are copied before the first start so the process boots with them.
        """
        container_name = props.get("name", name)
        validate_resource_name(container_name)
        c = self.conn.client()

        networks = list(props.get("networks") or [])
        kwargs: dict[str, Any] = {
            "name": container_name,
            "command": props.get("command"),
            "environment": env_dict(props.get("env")),
            "ports": port_bindings(props.get("ports") or []),
            "labels": self.labels(name),
            "restart_policy": {"Name": props.get("restart", "no")},
        }
        if networks:
            primary = networks[0]
            kwargs["network"] = primary["name"]
            if primary.get("aliases"):
                kwargs["networking_config"] = {
                    primary["name"]: c.api.create_endpoint_config(aliases=list(primary["aliases"]))
                }

        self._remove_leftover(container_name, name)
        with docker_errors(f"create container {container_name}"):
            container = c.containers.create(props["image"], **kwargs)
        try:
            for extra in networks[1:]:
                with docker_errors(f"connect {container_name} to {extra['name']}"):
                    c.networks.get(extra["name"]).connect(container, aliases=list(extra.get("aliases") or []) or None)

            for f in files:
                self.write_file(container.id, f.path, f.content)

            with docker_errors(f"start container {container_name}"):
                container.start()
        except (AdapterError, ValueError):
            self._discard(container)
            raise
        return {"id": container.id, "name": container_name}

    def read(self, resource_id: str) -> dict[str, Any]:
        with docker_errors(f"read container {resource_id}"):
            container = self.conn.client().containers.get(resource_id)
            container.reload()
        return {"id": container.id, "name": container.name, "status": container.status}

    def update(
        self, resource_id: str, props: dict[str, Any], diff: Iterable[str], files: Iterable[FileUpload] = ()
    ) -> dict[str, Any]:
        if not self.supports_update(diff):
            raise Unsupported("Container configuration cannot change on a live container.")
        written = False
        for f in files:
            written = self.write_file(resource_id, f.path, f.content) or written
        if written:
            with docker_errors(f"restart container {resource_id}"):
                self.conn.client().containers.get(resource_id).restart()
        return {"id": resource_id, "name": props.get("name", "")}

    def delete(self, resource_id: str, props: dict[str, Any] | None = None) -> bool:
        try:
            with docker_errors(f"remove container {resource_id}"):
                self.conn.client().containers.get(resource_id).remove(force=True)
        except NotFound:
            return False
        self._forget_digests(resource_id)
        return True

    def _remove_leftover(self, container_name: str, name: str) -> None:
        """Remove a container of ours that an interrupted create left behind."""
        try:
            with docker_errors(f"read container {container_name}"):
                existing = self.conn.client().containers.get(container_name)
        except NotFound:
            return
        labels = existing.labels or {}
        if any(labels.get(k) != v for k, v in self.labels(name).items()):
            return
        with docker_errors(f"remove container {container_name}"):
            existing.remove(force=True)
        self._forget_digests(existing.id)

    def _discard(self, container: Any) -> None:
        """Remove a half-built container so a retried create can reuse its name."""
        try:
            with docker_errors(f"remove container {container.id}"):
                container.remove(force=True)
        except AdapterError:
            # The next create removes it through _remove_leftover.
            pass
        self._forget_digests(container.id)

    def _forget_digests(self, resource_id: str) -> None:
        with self._digest_lock:
            for key in [k for k in self._digests if k[0] == resource_id]:
                del self._digests[key]

    def remember_files(self, resource_id: str, digests: dict[str, str]) -> None:
        with self._digest_lock:
            for path, digest in digests.items():
                self._digests[(resource_id, path)] = digest

    def write_file(self, container_id: str, path: str, content: str) -> bool:
        """Copy ``content`` to ``path`` inside the container.

        Returns False without touching the container when the same content was
        already written there.
        """
        validate_file_path(path)
        digest = content_digest(content)
        key = (container_id, path)
        with self._digest_lock:
            if self._digests.get(key) == digest:
                return False

        directory, filename = posixpath.split(path)
        data = tar_single_file(filename, content.encode("utf-8"))
        with docker_errors(f"copy {path} into {container_id}"):
            container = self.conn.client().containers.get(container_id)
            ok = container.put_archive(directory or "/", data)
        if not ok:
            raise AdapterError(f"Docker refused to copy {path} into {container_id}.")

        with self._digest_lock:
            self._digests[key] = digest
            self.writes += 1
        return True


def default_adapters(stack: str, client_factory: Callable[[], Any] | None = None) -> dict[Kind, RuntimeAdapter]:
    conn = DockerConnection(client_factory)
    return {
        Kind.NETWORK: NetworkAdapter(conn, stack),
        Kind.IMAGE: ImageAdapter(conn, stack),
        Kind.CONTAINER: ContainerAdapter(conn, stack),
    }
