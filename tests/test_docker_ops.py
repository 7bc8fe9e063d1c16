import io
import tarfile

import pytest
import requests
from docker.errors import APIError, DockerException
from docker.errors import NotFound as DockerNotFound

from stackrec.docker_ops import (
    ContainerAdapter,
    DockerConnection,
    ImageAdapter,
    NetworkAdapter,
    docker_errors,
    env_dict,
    port_bindings,
    split_image_name,
    validate_file_path,
)
from stackrec.errors import AdapterError, NotFound, RuntimeUnavailable, Unsupported
from stackrec.graph import FileUpload


class _Obj:
    def __init__(self, id, name):
        self.id = id
        self.name = name


class FakeContainer(_Obj):
    def __init__(self, id, name, client):
        super().__init__(id, name)
        self.client = client
        self.status = "created"
        self.archives = []

    def start(self):
        if self.client.start_failures:
            raise DockerException(self.client.start_failures.pop(0))
        self.status = "running"
        self.client.log.append(("start", self.name))

    def reload(self):
        pass

    def restart(self):
        self.client.log.append(("restart", self.name))

    def remove(self, force=False):
        del self.client.containers.items[self.id]

    def put_archive(self, path, data):
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            member = tar.getmembers()[0]
            content = tar.extractfile(member).read().decode()
        self.archives.append((path, member.name, content))
        self.client.log.append(("put_archive", f"{path}/{member.name}"))
        return True


class _Containers:
    def __init__(self, client):
        self.client = client
        self.items = {}
        self.create_kwargs = []
        self.created = 0

    def create(self, image, **kwargs):
        self.create_kwargs.append((image, kwargs))
        if any(c.name == kwargs["name"] for c in self.items.values()):
            raise APIError(f"409 Client Error: Conflict (name {kwargs['name']} is already in use)")
        self.created += 1
        c = FakeContainer(f"cid-{self.created}", kwargs["name"], self.client)
        c.labels = kwargs.get("labels")
        self.items[c.id] = c
        return c

    def get(self, cid):
        for c in self.items.values():
            if cid in (c.id, c.name):
                return c
        raise DockerNotFound(f"No such container: {cid}")


class _Network(_Obj):
    def __init__(self, id, name, client):
        super().__init__(id, name)
        self.client = client

    def remove(self):
        del self.client.networks.items[self.name]

    def connect(self, container, aliases=None):
        self.client.log.append(("connect", self.name))


class _Networks:
    def __init__(self, client):
        self.client = client
        self.items = {}

    def get(self, name):
        for n in self.items.values():
            if name in (n.name, n.id):
                return n
        raise DockerNotFound(f"network {name} not found")

    def create(self, name, driver="bridge", labels=None):
        n = _Network(f"nid-{name}", name, self.client)
        n.labels = labels
        self.items[name] = n
        return n


class _Image(_Obj):
    tags = []


class _Images:
    def __init__(self):
        self.local = {}
        self.pulled = []

    def get(self, name):
        if name in self.local:
            return self.local[name]
        raise DockerNotFound(f"image {name} not found")

    def pull(self, repo, tag=None):
        self.pulled.append((repo, tag))
        img = _Image(f"sha256:{repo}-{tag}", f"{repo}:{tag}")
        self.local[f"{repo}:{tag}"] = img
        return img

    def remove(self, image_id):
        self.local = {k: v for k, v in self.local.items() if v.id != image_id}


class _Api:
    def create_endpoint_config(self, aliases=None):
        return {"Aliases": aliases}


class FakeDockerClient:
    def __init__(self):
        self.log = []
        self.start_failures = []
        self.containers = _Containers(self)
        self.networks = _Networks(self)
        self.images = _Images()
        self.api = _Api()


@pytest.fixture
def client():
    return FakeDockerClient()


@pytest.fixture
def conn(client):
    return DockerConnection(lambda: client)


def test_network_get_or_create(conn, client):
    net = NetworkAdapter(conn, "dev")
    out = net.create("network", {"name": "webapp-network-dev", "driver": "bridge"})
    assert out == {"id": "nid-webapp-network-dev", "name": "webapp-network-dev"}
    assert client.networks.items["webapp-network-dev"].labels == {"stackrec.stack": "dev", "stackrec.resource": "network"}
    # An existing network with the same name is adopted.
    assert net.create("network", {"name": "webapp-network-dev"})["id"] == out["id"]
    assert net.delete(out["id"]) is True
    assert net.delete(out["id"]) is False
    with pytest.raises(NotFound):
        net.read(out["id"])


def test_image_pulls_only_when_missing(conn, client):
    img = ImageAdapter(conn, "dev")
    out = img.create("redis-image", {"name": "redis:7-alpine"})
    assert client.images.pulled == [("redis", "7-alpine")]
    assert img.create("redis-image", {"name": "redis:7-alpine"})["id"] == out["id"]
    assert client.images.pulled == [("redis", "7-alpine")]


def test_image_keep_locally(conn, client):
    img = ImageAdapter(conn, "dev")
    out = img.create("nginx-image", {"name": "nginx:alpine", "keep_locally": True})
    assert img.delete(out["id"], {"keep_locally": True}) is True
    assert "nginx:alpine" in client.images.local
    assert img.supports_update({"keep_locally"})
    assert not img.supports_update({"name", "keep_locally"})
    with pytest.raises(Unsupported):
        img.update(out["id"], {"name": "nginx:1.27"}, {"name"})


def test_container_create_injects_files_before_start(conn, client):
    ctr = ContainerAdapter(conn, "prod")
    client.networks.create("webapp-network-prod")
    out = ctr.create(
        "redis",
        {
            "name": "redis-prod",
            "image": "sha256:redis",
            "networks": [{"name": "webapp-network-prod", "aliases": ["redis"]}],
            "ports": [{"internal": 6379, "external": 9080}],
            "env": ["A=1", "B=x=y"],
            "restart": "unless-stopped",
        },
        files=[FileUpload("/etc/redis/redis.conf", "maxmemory 64mb\n")],
    )
    assert out == {"id": "cid-1", "name": "redis-prod"}

    image, kwargs = client.containers.create_kwargs[0]
    assert image == "sha256:redis"
    assert kwargs["ports"] == {"6379/tcp": 9080}
    assert kwargs["environment"] == {"A": "1", "B": "x=y"}
    assert kwargs["network"] == "webapp-network-prod"
    assert kwargs["networking_config"] == {"webapp-network-prod": {"Aliases": ["redis"]}}
    assert kwargs["restart_policy"] == {"Name": "unless-stopped"}
    assert kwargs["labels"]["stackrec.stack"] == "prod"

    assert client.log == [("put_archive", "/etc/redis/redis.conf"), ("start", "redis-prod")]
    assert client.containers.items["cid-1"].archives == [("/etc/redis", "redis.conf", "maxmemory 64mb\n")]


def test_write_file_is_idempotent(conn, client):
    ctr = ContainerAdapter(conn, "dev")
    out = ctr.create("nginx", {"name": "nginx-dev", "image": "nginx"})
    assert ctr.write_file(out["id"], "/usr/share/nginx/html/index.html", "<h1>hi</h1>") is True
    assert ctr.write_file(out["id"], "/usr/share/nginx/html/index.html", "<h1>hi</h1>") is False
    assert ctr.writes == 1
    assert ctr.write_file(out["id"], "/usr/share/nginx/html/index.html", "<h1>v2</h1>") is True
    assert ctr.writes == 2


def test_update_files_restarts_only_when_written(conn, client):
    ctr = ContainerAdapter(conn, "dev")
    files = [FileUpload("/etc/nginx/nginx.conf", "events {}")]
    out = ctr.create("nginx", {"name": "nginx-dev", "image": "nginx"}, files)

    ctr.update(out["id"], {"name": "nginx-dev"}, {"files"}, files)
    assert ("restart", "nginx-dev") not in client.log

    ctr.update(out["id"], {"name": "nginx-dev"}, {"files"}, [FileUpload("/etc/nginx/nginx.conf", "events { }")])
    assert client.log[-1] == ("restart", "nginx-dev")

    with pytest.raises(Unsupported):
        ctr.update(out["id"], {"name": "nginx-dev"}, {"ports"}, files)


def test_remembered_digests_skip_rewrites(conn, client):
    ctr = ContainerAdapter(conn, "dev")
    out = ctr.create("nginx", {"name": "nginx-dev", "image": "nginx"})
    f = FileUpload("/etc/nginx/nginx.conf", "events {}")
    ctr.remember_files(out["id"], {f.path: f.digest})
    assert ctr.write_file(out["id"], f.path, f.content) is False
    assert ctr.writes == 0


def test_container_delete_and_read(conn, client):
    ctr = ContainerAdapter(conn, "dev")
    out = ctr.create("nginx", {"name": "nginx-dev", "image": "nginx"})
    assert ctr.read(out["id"])["status"] == "running"
    assert ctr.delete(out["id"]) is True
    assert ctr.delete(out["id"]) is False
    with pytest.raises(NotFound):
        ctr.read(out["id"])


def test_error_translation():
    with pytest.raises(NotFound):
        with docker_errors("x"):
            raise DockerNotFound("gone")
    with pytest.raises(AdapterError) as exc:
        with docker_errors("x"):
            raise APIError("conflict")
    assert not isinstance(exc.value, RuntimeUnavailable)
    with pytest.raises(RuntimeUnavailable):
        with docker_errors("x"):
            raise DockerException("Error while fetching server API version")
    with pytest.raises(RuntimeUnavailable):
        with docker_errors("x"):
            raise requests.exceptions.ConnectionError("refused")


def test_unreachable_daemon_is_runtime_unavailable():
    def _boom():
        raise DockerException("connection refused")

    conn = DockerConnection(_boom)
    with pytest.raises(RuntimeUnavailable):
        NetworkAdapter(conn, "dev").read("abc")


def test_helpers():
    assert split_image_name("redis:7-alpine") == ("redis", "7-alpine")
    assert split_image_name("nginx") == ("nginx", "latest")
    assert split_image_name("localhost:5000/app") == ("localhost:5000/app", "latest")
    assert port_bindings([{"internal": 53, "external": 5353, "protocol": "udp"}]) == {"53/udp": 5353}
    assert env_dict({"A": 1}) == {"A": "1"}
    with pytest.raises(ValueError):
        validate_file_path("etc/passwd")
    with pytest.raises(ValueError):
        validate_file_path("/etc/../passwd")


def test_failed_start_removes_the_half_built_container(conn, client):
    ctr = ContainerAdapter(conn, "dev")
    client.start_failures.append("daemon hiccup")
    files = [FileUpload("/etc/nginx/nginx.conf", "events {}")]

    with pytest.raises(RuntimeUnavailable):
        ctr.create("nginx", {"name": "nginx-dev", "image": "nginx"}, files)
    assert client.containers.items == {}

    out = ctr.create("nginx", {"name": "nginx-dev", "image": "nginx"}, files)
    assert client.containers.items[out["id"]].status == "running"
    # The retried create copies the file again into the new container.
    assert ctr.writes == 2


def test_create_replaces_leftover_container_of_the_same_resource(conn, client):
    ctr = ContainerAdapter(conn, "dev")
    leftover = client.containers.create("nginx", name="nginx-dev", labels=ctr.labels("nginx"))

    out = ctr.create("nginx", {"name": "nginx-dev", "image": "nginx"})
    assert out["id"] != leftover.id
    assert list(client.containers.items) == [out["id"]]


def test_create_does_not_touch_foreign_container_with_the_same_name(conn, client):
    client.containers.create("nginx", name="nginx-dev", labels={"owner": "someone-else"})
    ctr = ContainerAdapter(conn, "dev")
    with pytest.raises(AdapterError):
        ctr.create("nginx", {"name": "nginx-dev", "image": "nginx"})
    assert len(client.containers.items) == 1
