"""
Provisioning of running VMs.

Every step follows the same three phases:

1. resolve the address of every target; any failure aborts before
   remote work starts;
2. start one task per address;
3. wait for all tasks. A failing target never cancels the others; the
   first error to occur is raised once all tasks are done.
"""

import asyncio
import glob
import time
from typing import Awaitable, Callable, Iterable, List, Optional

from core.errors import PreconditionError
from core.logger import log_error, log_event
from core.metrics import record_provision_step
from core.models import DockerContainerConfig, RsyncStep, ShellStep
from core.network import NetworkCoordinator
from core.ssh import SSHCredentials, run_ssh_command


async def run_all(aws: Iterable[Awaitable[None]]) -> None:
    """
    Run awaitables concurrently until every one has finished.

    Failures are collected instead of cancelling siblings; the error that
    happened first (by completion time) is re-raised at the end.
    """
    errors: List[BaseException] = []

    async def _capture(aw: Awaitable[None]) -> None:
        try:
            await aw
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    await asyncio.gather(*(_capture(aw) for aw in aws))

    if errors:
        for e in errors[1:]:
            log_error(f"[exec] Additional provisioning failure: {e}")
        raise errors[0]


class ProvisioningExecutor:
    def __init__(
        self,
        network: NetworkCoordinator,
        credentials: Optional[SSHCredentials] = None,
        ssh_runner: Callable[..., Awaitable[None]] = run_ssh_command,
        copier=None,
        docker_runner=None,
    ) -> None:
        self.network = network
        self.credentials = credentials or SSHCredentials()
        self.ssh_runner = ssh_runner
        self.copier = copier
        self.docker_runner = docker_runner

    async def _resolve(self, vm_names: List[str]) -> List[str]:
        # libvirt calls block, keep them off the event loop
        return await asyncio.to_thread(self.network.resolve_targets, list(vm_names))

    async def _dispatch(self, kind: str, aws: List[Awaitable[None]]) -> None:
        start = time.time()
        try:
            await run_all(aws)
        except Exception:
            record_provision_step(kind, "error", time.time() - start)
            raise
        record_provision_step(kind, "success", time.time() - start)

    async def exec_shell(self, vm_names: List[str], step: ShellStep) -> None:
        ips = await self._resolve(vm_names)

        aws = []
        for ip in ips:
            log_event(f"[exec] Provisioning via SSH: {step.script!r} in {ip}")
            aws.append(self.ssh_runner(ip, self.credentials, step.script, step.env))
        await self._dispatch("shell", aws)

    async def exec_rsync(self, vm_names: List[str], step: RsyncStep) -> None:
        if self.copier is None:
            raise PreconditionError("no file copier configured")

        files = sorted(glob.glob(step.source))
        if not files:
            raise PreconditionError(f"no files match '{step.source}'")

        ips = await self._resolve(vm_names)

        aws = []
        for ip in ips:
            log_event(f"[exec] Copying files via rsync: {step.source} to {step.dest} on {ip}")
            aws.append(self.copier.copy(ip, files, step.dest))
        await self._dispatch("rsync", aws)

    async def exec_docker(self, vm_names: List[str], config: DockerContainerConfig) -> None:
        if self.docker_runner is None:
            raise PreconditionError("no container runner configured")

        ips = await self._resolve(vm_names)
        private_key = self.credentials.private_key()

        aws = []
        for ip in ips:
            log_event(f"[exec] Running container {config.image} against {ip}")
            aws.append(self.docker_runner.run(config, ip, private_key))
        await self._dispatch("docker", aws)
