import ipaddress
import socket
import time
import xml.etree.ElementTree as ET
from typing import List, Optional

from core.errors import DeadlineExceeded, NotFoundError, PreconditionError
from core.logger import log_event


def _dhcp_host_xml(mac: str, ip) -> str:
    return f"<host mac='{mac}' ip='{ip}'/>"


def domain_mac(domain_xml: str) -> str:
    """
    Return the MAC address of the first network interface of a domain.
    """
    root = ET.fromstring(domain_xml)
    mac = root.find("./devices/interface/mac")
    if mac is None or not mac.get("address"):
        raise NotFoundError("domain has no network interface with a MAC address")
    return mac.get("address").lower()


def network_ip_interface(network_xml: str) -> ipaddress.IPv4Interface:
    """
    Parse the host address and IPv4 subnet of a libvirt network from its
    XML description (``<ip address=... netmask=...>`` or ``prefix=...``).
    """
    root = ET.fromstring(network_xml)
    for ip in root.findall("./ip"):
        family = ip.get("family", "ipv4")
        if family != "ipv4":
            continue
        address = ip.get("address")
        mask = ip.get("netmask") or ip.get("prefix")
        if address and mask:
            return ipaddress.IPv4Interface(f"{address}/{mask}")
    raise PreconditionError("network has no IPv4 address definition")


def dhcp_host_ips(network_xml: str, mac: str) -> List[str]:
    """IPs of all DHCP host entries reserved for ``mac``."""
    root = ET.fromstring(network_xml)
    ips = []
    for host in root.findall("./ip/dhcp/host"):
        if (host.get("mac") or "").lower() == mac.lower() and host.get("ip"):
            ips.append(host.get("ip"))
    return ips


class NetworkCoordinator:
    """
    DHCP reservations and address lookup on the managed libvirt network.

    Reservations are keyed by MAC, which is derived from the VM ID, so the
    same VM always gets ``network address + VM ID``.
    """

    def __init__(self, backend, network_name: str) -> None:
        self.backend = backend
        self.network_name = network_name

    def _network(self):
        return self.backend.lookup_network(self.network_name)

    def bind(self, mac: str, vm_id: int) -> ipaddress.IPv4Address:
        network = self._network()
        host = network_ip_interface(self.backend.network_xml(network))
        ip_net = host.network

        ip = ip_net.network_address + vm_id
        # the host side of the bridge holds one address of the subnet too
        reserved = (ip_net.network_address, ip_net.broadcast_address, host.ip)
        if ip not in ip_net or ip in reserved:
            raise PreconditionError(
                f"computed IP {ip} for VM ID {vm_id} is not a free host address of network "
                f"'{self.network_name}' ({ip_net})"
            )

        log_event(f"[net] Add DHCP entry from {mac} to {ip}")
        self.backend.add_dhcp_host(network, _dhcp_host_xml(mac, ip))
        return ip

    def unbind(self, domain) -> None:
        """
        Remove the DHCP reservation of a domain. The MAC is read from the
        domain itself, so this must run before the domain is undefined.
        Missing reservations are not an error.
        """
        mac = domain_mac(self.backend.domain_xml(domain))
        network = self._network()

        ips = dhcp_host_ips(self.backend.network_xml(network), mac)
        if not ips:
            log_event(f"[net] No DHCP entry for {mac}, nothing to remove")
            return

        for ip in ips:
            log_event(f"[net] Remove DHCP entry from {mac} to {ip}")
            self.backend.remove_dhcp_host(network, _dhcp_host_xml(mac, ip))

    def resolve(self, network, domain) -> str:
        mac = domain_mac(self.backend.domain_xml(domain))
        leases = self.backend.dhcp_leases(network, mac)
        for lease in leases:
            if (lease.get("mac") or "").lower() == mac and lease.get("ipaddr"):
                return lease["ipaddr"]
        raise NotFoundError("no IP found for domain")

    def resolve_targets(self, vm_names: List[str]) -> List[str]:
        """
        Resolve the current address of every VM in ``vm_names``.

        All targets must be running. The first failure aborts the whole
        lookup, so callers never start remote work on a partial set.
        """
        network = self._network()

        ips: List[str] = []
        for vm_name in vm_names:
            try:
                domain = self.backend.lookup_domain(vm_name)
            except NotFoundError as e:
                raise NotFoundError(f"could not get domain '{vm_name}': {e}") from e

            if not self.backend.is_active(domain):
                raise PreconditionError(
                    f"cannot operate on VM '{vm_name}' that is not running"
                )

            try:
                ips.append(self.resolve(network, domain))
            except NotFoundError as e:
                raise NotFoundError(f"could not find IP for VM '{vm_name}': {e}") from e
        return ips


def wait_for_port(
    host: str,
    port: int,
    timeout: float,
    interval: float = 1.0,
    connect_timeout: Optional[float] = 2.0,
) -> None:
    """
    Poll until a TCP connection to ``host:port`` succeeds.

    Raises :class:`DeadlineExceeded` when the port is still closed after
    ``timeout`` seconds.
    """
    deadline = time.monotonic() + timeout
    attempts = 0
    while True:
        attempts += 1
        try:
            with socket.create_connection((host, port), timeout=connect_timeout):
                log_event(f"[net] Port {host}:{port} open after {attempts} attempt(s)")
                return
        except OSError as e:
            last_error = e

        if time.monotonic() + interval > deadline:
            raise DeadlineExceeded(
                f"timed out waiting for {host}:{port} after {timeout}s: {last_error}"
            )
        time.sleep(interval)
