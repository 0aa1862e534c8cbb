import asyncio
import io
import tarfile
import time
from typing import Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from config.settings import DOCKER_TIMEOUT
from core.errors import RemoteExecutionError
from core.logger import log_event
from core.models import DockerContainerConfig

# where the VM access key is placed inside the provisioning container
CONTAINER_KEY_DIR = "root/.ssh"
CONTAINER_KEY_NAME = "id_rsa"


def _key_archive(private_key: bytes) -> bytes:
    """Tar archive holding the SSH private key, rooted at ``/``."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        now = time.time()

        directory = tarfile.TarInfo(CONTAINER_KEY_DIR)
        directory.type = tarfile.DIRTYPE
        directory.mode = 0o700
        directory.mtime = now
        tar.addfile(directory)

        key = tarfile.TarInfo(f"{CONTAINER_KEY_DIR}/{CONTAINER_KEY_NAME}")
        key.size = len(private_key)
        key.mode = 0o600
        key.mtime = now
        tar.addfile(key, io.BytesIO(private_key))
    return buf.getvalue()


def container_name(config: DockerContainerConfig, address: str) -> str:
    return f"{config.name}-{address.replace('.', '-').replace(':', '-')}"


class DockerRunner:
    """
    Run a provisioning container on the host against one VM.

    The container gets ``TARGET=<vm address>`` in its environment and the
    VM's SSH private key at ``/root/.ssh/id_rsa``; it uses the host
    network so it can reach the VM directly.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None, timeout: float = DOCKER_TIMEOUT):
        self._client = client
        self.timeout = timeout

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env(timeout=int(self.timeout))
        return self._client

    def _ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
        except ImageNotFound:
            log_event(f"[docker] Pulling image {image}")
            self.client.images.pull(image)

    def _remove_stale(self, name: str) -> None:
        """Remove a container left behind under ``name`` by an interrupted run."""
        try:
            stale = self.client.containers.get(name)
        except NotFound:
            return
        log_event(f"[docker] Removing stale container {name}")
        stale.remove(force=True)

    def run_sync(self, config: DockerContainerConfig, address: str, private_key: bytes) -> None:
        name = container_name(config, address)
        environment = dict(config.env)
        environment["TARGET"] = address

        try:
            self._ensure_image(config.image)
            self._remove_stale(name)
            container = self.client.containers.create(
                config.image,
                command=config.command,
                environment=environment,
                name=name,
                network_mode="host",
                detach=True,
            )
        except DockerException as e:
            raise RemoteExecutionError(f"could not create container for {address}: {e}") from e

        try:
            container.put_archive("/", _key_archive(private_key))
            container.start()
            log_event(f"[docker] Started container {name} ({config.image}) for {address}")

            for chunk in container.logs(stream=True, follow=True):
                for line in chunk.decode("utf-8", errors="replace").splitlines():
                    log_event(f"[docker] {address}: {line}")

            result = container.wait(timeout=self.timeout)
            status = result.get("StatusCode")
            if status != 0:
                raise RemoteExecutionError(
                    f"container {name} for {address} exited with status {status}"
                )
            log_event(f"[docker] Container {name} for {address} finished")
        except DockerException as e:
            raise RemoteExecutionError(f"container {name} for {address} failed: {e}") from e
        finally:
            try:
                container.remove(force=True)
            except DockerException as e:
                log_event(f"[docker] Failed to remove container {name}: {e}")

    async def run(self, config: DockerContainerConfig, address: str, private_key: bytes) -> None:
        await asyncio.to_thread(self.run_sync, config, address, private_key)
