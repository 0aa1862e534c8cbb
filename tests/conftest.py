"""Shared fixtures: an in-memory libvirt backend that records every call."""

import queue
import threading
import uuid
import xml.etree.ElementTree as ET
from contextlib import contextmanager
from typing import Dict, List, Optional

import pytest

from core.errors import BackendError, NotFoundError
from core.models import EVENT_STOPPED, LifecycleEvent
from core.naming import qemu_mac

DOMAIN_XML = """<domain type='kvm'>
  <name>{name}</name>
  <devices>
    <interface type='network'>
      <mac address='{mac}'/>
      <source network='default'/>
    </interface>
  </devices>
</domain>
"""


class FakePool:
    def __init__(self, name: str) -> None:
        self.name = name


class FakeVolume:
    def __init__(self, name: str, xml: str) -> None:
        self.name = name
        self.xml = xml
        self.data: Optional[bytes] = None


class FakeSnapshot:
    def __init__(self, name: str) -> None:
        self.name = name


class FakeDomain:
    def __init__(self, name: str, xml: str) -> None:
        self.name = name
        self.xml = xml
        self.uuid = str(uuid.uuid4())
        self.active = False
        self.persistent = True
        self.snapshots: List[FakeSnapshot] = []


class FakeNetwork:
    def __init__(self, name: str) -> None:
        self.name = name


class FakeBackend:
    """
    Minimal stand-in for LibvirtBackend.

    ``calls`` records (operation, subject) tuples in order so tests can
    assert on ordering. Shutdown requests emit a stopped lifecycle event
    to every open subscription unless ``emit_stop_events`` is False.
    """

    def __init__(self, network_address: str = "192.168.122.1", netmask: str = "255.255.255.0"):
        self.network_address = network_address
        self.netmask = netmask
        self.pool = FakePool("default")
        self.volumes: Dict[str, FakeVolume] = {}
        self.domains: Dict[str, FakeDomain] = {}
        self.dhcp_hosts: List[tuple] = []
        self.leases: List[dict] = []
        self.calls: List[tuple] = []
        self.subscriptions: List[queue.Queue] = []
        self.emit_stop_events = True
        self._lock = threading.Lock()

    def _record(self, op: str, subject=None) -> None:
        with self._lock:
            self.calls.append((op, subject))

    def ops(self, *names: str) -> List[tuple]:
        return [c for c in self.calls if c[0] in names]

    # test helpers
    def add_image(self, name: str) -> None:
        self.volumes[name] = FakeVolume(name, "<volume/>")

    def add_running_vm(self, name: str, vm_id: int, ip: Optional[str] = None, active: bool = True) -> FakeDomain:
        mac = qemu_mac(vm_id)
        dom = FakeDomain(name, DOMAIN_XML.format(name=name, mac=mac))
        dom.active = active
        self.domains[name] = dom
        if ip is not None:
            self.leases.append({"mac": mac, "ipaddr": ip})
        return dom

    def add_snapshot(self, domain_name: str, snapshot_name: str) -> None:
        self.domains[domain_name].snapshots.append(FakeSnapshot(snapshot_name))

    def emit(self, event: LifecycleEvent) -> None:
        for q in list(self.subscriptions):
            q.put(event)

    # storage
    def lookup_pool(self, name: str):
        self._record("lookup_pool", name)
        return self.pool

    def create_volume(self, pool, xml: str):
        name = ET.fromstring(xml).findtext("name")
        if name in self.volumes:
            raise BackendError(f"could not create volume: volume '{name}' exists already")
        self._record("create_volume", name)
        volume = FakeVolume(name, xml)
        self.volumes[name] = volume
        return volume

    def lookup_volume(self, pool, name: str):
        if name not in self.volumes:
            raise NotFoundError(f"could not get volume: no storage vol with matching name '{name}'")
        return self.volumes[name]

    def volume_path(self, volume) -> str:
        return f"/var/lib/libvirt/images/{volume.name}"

    def upload_volume(self, volume, data: bytes) -> None:
        self._record("upload_volume", volume.name)
        volume.data = data

    def delete_volume(self, volume) -> None:
        self._record("delete_volume", volume.name)
        del self.volumes[volume.name]

    # domains
    def define_domain(self, xml: str):
        name = ET.fromstring(xml).findtext("name")
        self._record("define_domain", name)
        dom = FakeDomain(name, xml)
        self.domains[name] = dom
        return dom

    def lookup_domain(self, name: str):
        if name not in self.domains:
            raise NotFoundError(f"could not get domain: no domain with matching name '{name}'")
        return self.domains[name]

    def list_domains(self):
        return list(self.domains.values())

    def start_domain(self, dom) -> None:
        self._record("start_domain", dom.name)
        dom.active = True

    def destroy_domain(self, dom) -> None:
        self._record("destroy_domain", dom.name)
        dom.active = False

    def shutdown_domain(self, dom) -> None:
        self._record("shutdown_domain", dom.name)
        if self.emit_stop_events:
            dom.active = False
            self.emit(LifecycleEvent(dom.uuid, dom.name, EVENT_STOPPED))

    def undefine_domain(self, dom) -> None:
        self._record("undefine_domain", dom.name)
        del self.domains[dom.name]

    def is_active(self, dom) -> bool:
        self._record("is_active", dom.name)
        return dom.active

    def is_persistent(self, dom) -> bool:
        return dom.persistent

    def domain_name(self, dom) -> str:
        return dom.name

    def domain_uuid(self, dom) -> str:
        return dom.uuid

    def domain_xml(self, dom) -> str:
        return dom.xml

    def domain_info(self, dom) -> dict:
        return {
            "state": 1 if dom.active else 5,
            "max_memory": 1048576,
            "memory": 1048576,
            "vcpus": 1,
            "cpu_time": 0,
        }

    def list_snapshots(self, dom):
        return list(dom.snapshots)

    def snapshot_name(self, snapshot) -> str:
        return snapshot.name

    def delete_snapshot(self, snapshot) -> None:
        self._record("delete_snapshot", snapshot.name)
        for dom in self.domains.values():
            if snapshot in dom.snapshots:
                dom.snapshots.remove(snapshot)

    @contextmanager
    def lifecycle_events(self):
        q: queue.Queue = queue.Queue()
        self._record("subscribe")
        self.subscriptions.append(q)
        try:
            yield q
        finally:
            self.subscriptions.remove(q)
            self._record("unsubscribe")

    # networks
    def lookup_network(self, name: str):
        return FakeNetwork(name)

    def network_xml(self, network) -> str:
        hosts = "".join(f"<host mac='{mac}' ip='{ip}'/>" for mac, ip in self.dhcp_hosts)
        return (
            f"<network><name>{network.name}</name>"
            f"<ip address='{self.network_address}' netmask='{self.netmask}'>"
            f"<dhcp><range start='192.168.122.2' end='192.168.122.254'/>{hosts}</dhcp>"
            f"</ip></network>"
        )

    def dhcp_leases(self, network, mac=None):
        return [lease for lease in self.leases if mac is None or lease["mac"] == mac]

    def add_dhcp_host(self, network, host_xml: str) -> None:
        host = ET.fromstring(host_xml)
        self._record("add_dhcp_host", host.get("mac"))
        self.dhcp_hosts.append((host.get("mac"), host.get("ip")))

    def remove_dhcp_host(self, network, host_xml: str) -> None:
        host = ET.fromstring(host_xml)
        entry = (host.get("mac"), host.get("ip"))
        if entry not in self.dhcp_hosts:
            raise BackendError("could not remove DHCP entry: not found")
        self._record("remove_dhcp_host", host.get("mac"))
        self.dhcp_hosts.remove(entry)


@pytest.fixture
def backend() -> FakeBackend:
    fake = FakeBackend()
    fake.add_image("debian-12")
    return fake


@pytest.fixture
def make_backend():
    return FakeBackend
