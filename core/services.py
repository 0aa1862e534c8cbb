from dataclasses import dataclass
from typing import Optional

from config.settings import LIBVIRT_URI, NETWORK_NAME, STORAGE_POOL_NAME
from core.docker_exec import DockerRunner
from core.network import NetworkCoordinator
from core.provisioner import ProvisioningExecutor
from core.rsync import RsyncCopier
from core.session import InteractiveSession
from core.ssh import SSHCredentials
from core.vm_controller import VMController


@dataclass
class Services:
    backend: object
    network: NetworkCoordinator
    controller: VMController
    executor: ProvisioningExecutor
    credentials: SSHCredentials

    def interactive_session(self) -> InteractiveSession:
        return InteractiveSession(self.network, self.credentials)

    def close(self) -> None:
        close = getattr(self.backend, "close", None)
        if close is not None:
            close()


def build_services(backend=None, credentials: Optional[SSHCredentials] = None) -> Services:
    """
    Wire the provisioning components around one shared backend
    connection.
    """
    if backend is None:
        # libvirt-python is only imported when talking to a real host
        from core.backend import LibvirtBackend

        backend = LibvirtBackend(LIBVIRT_URI)

    credentials = credentials or SSHCredentials()
    network = NetworkCoordinator(backend, NETWORK_NAME)
    controller = VMController(
        backend,
        pool_name=STORAGE_POOL_NAME,
        network_name=NETWORK_NAME,
        network=network,
    )
    executor = ProvisioningExecutor(
        network,
        credentials=credentials,
        copier=RsyncCopier(credentials),
        docker_runner=DockerRunner(),
    )
    return Services(
        backend=backend,
        network=network,
        controller=controller,
        executor=executor,
        credentials=credentials,
    )
