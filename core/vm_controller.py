from typing import Any, Callable, Dict, List, Optional

from config.settings import (
    NETWORK_NAME,
    SHUTDOWN_TIMEOUT,
    SSH_WAIT_INTERVAL,
    SSH_WAIT_TIMEOUT,
    STORAGE_POOL_NAME,
    VM_SSH_PORT,
)
from core.cloudinit import build_cidata
from core.errors import DeadlineExceeded, NotFoundError, PreconditionError
from core.logger import log_event
from core.models import VMConfig
from core.naming import boot_volume_name, cidata_volume_name, qemu_mac, scratch_volume_name
from core.network import NetworkCoordinator, wait_for_port
from core.shutdown import ShutdownMonitor
from core.templates import (
    CIDataVolumeParams,
    DomainParams,
    ScratchVolumeParams,
    TemplateKind,
    VMVolumeParams,
    render,
)

# libvirt domain states, as returned by virDomainGetInfo
DOMAIN_STATES = {
    0: "no state",
    1: "running",
    2: "blocked",
    3: "paused",
    4: "shutting down",
    5: "shut off",
    6: "crashed",
    7: "pmsuspended",
}


class VMController:
    """
    Core VM lifecycle operations, abstracted over a libvirt backend.

    All resources are found again by name: volumes are named after the VM
    and the DHCP reservation after the MAC derived from the VM ID. That
    lets ``rm`` and ``commit`` clean up after a ``run`` from another
    process.

    ``run`` does not roll back. If a step fails, whatever the earlier
    steps created is left in place and ``rm`` removes it.
    """

    def __init__(
        self,
        backend,
        pool_name: str = STORAGE_POOL_NAME,
        network_name: str = NETWORK_NAME,
        network: Optional[NetworkCoordinator] = None,
        shutdown_monitor: Optional[ShutdownMonitor] = None,
        port_waiter: Callable[..., None] = wait_for_port,
    ) -> None:
        self.backend = backend
        self.pool_name = pool_name
        self.network_name = network_name
        self.network = network or NetworkCoordinator(backend, network_name)
        self.shutdown_monitor = shutdown_monitor or ShutdownMonitor(backend)
        self.port_waiter = port_waiter

    # ------------------------------------------------------------------
    # Utility methods
    # ------------------------------------------------------------------
    def _pool(self):
        return self.backend.lookup_pool(self.pool_name)

    def _create_boot_volume(self, pool, vm: VMConfig) -> None:
        """
        Create the boot disk as a copy-on-write clone of the backing image
        volume, which must live in the same pool.
        """
        try:
            backing = self.backend.lookup_volume(pool, vm.image_name)
        except NotFoundError as e:
            raise NotFoundError(f"could not get backing image volume '{vm.image_name}': {e}") from e
        backing_path = self.backend.volume_path(backing)

        xml = render(
            TemplateKind.VM_VOLUME,
            VMVolumeParams(volume_name=boot_volume_name(vm.name), backing_path=backing_path),
        )
        self.backend.create_volume(pool, xml)

    def _create_cidata_volume(self, pool, vm: VMConfig) -> None:
        data = build_cidata(vm.name, vm.ssh_public_keys)
        xml = render(
            TemplateKind.CIDATA_VOLUME,
            CIDataVolumeParams(volume_name=cidata_volume_name(vm.name)),
        )
        volume = self.backend.create_volume(pool, xml)
        self.backend.upload_volume(volume, data)

    def _create_scratch_volume(self, pool, vm: VMConfig) -> None:
        xml = render(
            TemplateKind.SCRATCH_VOLUME,
            ScratchVolumeParams(volume_name=scratch_volume_name(vm.name)),
        )
        self.backend.create_volume(pool, xml)

    def _create_domain(self, vm: VMConfig) -> Dict[str, Any]:
        mac = qemu_mac(vm.vm_id)
        xml = render(
            TemplateKind.DOMAIN,
            DomainParams(
                pool_name=self.pool_name,
                vm_name=vm.name,
                mac=mac,
                memory_kib=vm.memory_kib,
                vcpus=vm.vcpus,
                network_name=self.network_name,
            ),
        )

        log_event(f"[vm] Define VM '{vm.name}'")
        dom = self.backend.define_domain(xml)

        # bind after define (rm finds the MAC on the domain), before start
        ip = self.network.bind(mac, vm.vm_id)

        log_event(f"[vm] Start VM '{vm.name}'")
        self.backend.start_domain(dom)
        return {"mac": mac, "ip": str(ip)}

    def _rm_snapshots(self, dom) -> None:
        for snapshot in self.backend.list_snapshots(dom):
            log_event(f"[vm] Delete snapshot {self.backend.snapshot_name(snapshot)}")
            self.backend.delete_snapshot(snapshot)

    def _rm_volume(self, pool, volume_name: str, debug_name: str) -> None:
        try:
            volume = self.backend.lookup_volume(pool, volume_name)
        except NotFoundError:
            log_event(f"[vm] No {debug_name} volume '{volume_name}', skipping")
            return

        log_event(f"[vm] Delete {debug_name} volume '{volume_name}'")
        self.backend.delete_volume(volume)

    def _rm_except_boot(self, pool, name: str) -> None:
        """
        Remove the domain, its DHCP reservation, and the scratch and
        cloud-init volumes. The boot volume is left alone so commit can
        keep it as an image. Anything already gone is skipped.
        """
        try:
            dom = self.backend.lookup_domain(name)
        except NotFoundError:
            log_event(f"[vm] No domain '{name}', skipping domain removal")
            dom = None

        if dom is not None:
            self._rm_snapshots(dom)

            active = self.backend.is_active(dom)
            persistent = self.backend.is_persistent(dom)

            # the MAC is read from the domain, so unbind before it goes away
            self.network.unbind(dom)

            if active:
                log_event(f"[vm] Stop VM '{name}'")
                self.backend.destroy_domain(dom)

            if persistent:
                log_event(f"[vm] Undefine VM '{name}'")
                self.backend.undefine_domain(dom)

        self._rm_volume(pool, scratch_volume_name(name), "scratch")
        self._rm_volume(pool, cidata_volume_name(name), "cloud-init")

    # ------------------------------------------------------------------
    # Public VM operations
    # ------------------------------------------------------------------
    def run(
        self,
        vm: VMConfig,
        wait_ssh: bool = False,
        wait_timeout: float = SSH_WAIT_TIMEOUT,
    ) -> Dict[str, Any]:
        pool = self._pool()

        log_event(f"[vm] Create boot volume for '{vm.name}' from image '{vm.image_name}'")
        self._create_boot_volume(pool, vm)

        log_event(f"[vm] Create cloud-init volume for '{vm.name}'")
        self._create_cidata_volume(pool, vm)

        log_event(f"[vm] Create scratch volume for '{vm.name}'")
        self._create_scratch_volume(pool, vm)

        identity = self._create_domain(vm)

        if wait_ssh:
            log_event(f"[vm] Wait for SSH port to open on {identity['ip']}")
            try:
                self.port_waiter(
                    identity["ip"],
                    VM_SSH_PORT,
                    timeout=wait_timeout,
                    interval=SSH_WAIT_INTERVAL,
                )
            except DeadlineExceeded as e:
                raise DeadlineExceeded(f"unable to connect to SSH port: {e}") from e
            log_event(f"[vm] Successfully connected to SSH port of '{vm.name}'")

        log_event(
            f"[vm] Created VM '{vm.name}' (id={vm.vm_id}, mac={identity['mac']}, "
            f"ip={identity['ip']}, memory={vm.memory_kib}KiB, vcpus={vm.vcpus})"
        )
        return {
            "name": vm.name,
            "id": vm.vm_id,
            "image": vm.image_name,
            "mac": identity["mac"],
            "ip": identity["ip"],
            "memory_kib": vm.memory_kib,
            "vcpus": vm.vcpus,
        }

    def rm(self, name: str) -> None:
        """
        Remove a VM and all of its volumes. Safe to call repeatedly and on
        a VM whose ``run`` failed halfway.
        """
        pool = self._pool()
        self._rm_except_boot(pool, name)
        self._rm_volume(pool, boot_volume_name(name), "boot")
        log_event(f"[vm] Removed VM '{name}'")

    def commit(
        self,
        name: str,
        shutdown: bool = False,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
    ) -> str:
        """
        Turn a VM's boot volume into a reusable image.

        The domain, DHCP reservation, scratch and cloud-init volumes are
        removed; the boot volume stays under its name (the VM name) and
        can be used as ``image_name`` for new VMs.

        - ``shutdown=True``: shut the VM down first, waiting at most
          ``shutdown_timeout`` seconds for the stop event.
        - ``shutdown=False``: the VM must already be stopped.
        """
        dom = self.backend.lookup_domain(name)

        if shutdown:
            self.shutdown_monitor.shutdown(dom, shutdown_timeout)
        elif self.backend.is_active(dom):
            raise PreconditionError("cannot commit a running VM")

        pool = self._pool()
        self._rm_except_boot(pool, name)
        log_event(f"[vm] Committed VM '{name}' as image '{boot_volume_name(name)}'")
        return boot_volume_name(name)

    def list_vms(self) -> List[Dict[str, Any]]:
        vms: List[Dict[str, Any]] = []
        for dom in self.backend.list_domains():
            try:
                info = self.backend.domain_info(dom)
                name = self.backend.domain_name(dom)
            except NotFoundError:
                # undefined between listing and inspection
                continue
            vms.append(
                {
                    "name": name,
                    "state": DOMAIN_STATES.get(info["state"], f"unknown({info['state']})"),
                    "memory": info["memory"],
                    "vcpus": info["vcpus"],
                }
            )
        return vms

    def get_vm_state(self, name: str) -> Dict[str, Any]:
        dom = self.backend.lookup_domain(name)
        info = self.backend.domain_info(dom)
        return {
            "name": name,
            "state_code": info["state"],
            "state": DOMAIN_STATES.get(info["state"], f"unknown({info['state']})"),
            "active": self.backend.is_active(dom),
            "max_memory": info["max_memory"],
            "memory": info["memory"],
            "vcpus": info["vcpus"],
            "cpu_time": info["cpu_time"],
        }
