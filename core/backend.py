"""
libvirt boundary.

Every libvirt call the provisioning core makes goes through
:class:`LibvirtBackend`. ``libvirt.libvirtError`` never leaves this
module: missing domains and volumes become :class:`NotFoundError`,
everything else becomes :class:`BackendError` with the operation that
failed in its message.
"""

import functools
import queue
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import libvirt

from core.errors import BackendError, NotFoundError, VMError
from core.logger import log_event
from core.models import EVENT_STOPPED, LifecycleEvent

NOT_FOUND_CODES = frozenset(
    {
        libvirt.VIR_ERR_NO_DOMAIN,
        libvirt.VIR_ERR_NO_STORAGE_VOL,
    }
)

# libvirt lifecycle event ids we care about, mapped to our event kinds
_EVENT_KINDS = {
    libvirt.VIR_DOMAIN_EVENT_STARTED: "started",
    libvirt.VIR_DOMAIN_EVENT_SUSPENDED: "suspended",
    libvirt.VIR_DOMAIN_EVENT_RESUMED: "resumed",
    libvirt.VIR_DOMAIN_EVENT_STOPPED: EVENT_STOPPED,
    libvirt.VIR_DOMAIN_EVENT_SHUTDOWN: "shutdown",
    libvirt.VIR_DOMAIN_EVENT_UNDEFINED: "undefined",
}

_DHCP_HOST_FLAGS = (
    libvirt.VIR_NETWORK_UPDATE_AFFECT_LIVE | libvirt.VIR_NETWORK_UPDATE_AFFECT_CONFIG
)


def classify_error(error: "libvirt.libvirtError", context: str) -> VMError:
    message = f"{context}: {error.get_error_message() or error}"
    if error.get_error_code() in NOT_FOUND_CODES:
        return NotFoundError(message)
    return BackendError(message)


def _backend_call(context: str):
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except libvirt.libvirtError as e:
                raise classify_error(e, context) from e

        return wrapper

    return decorator


def _libvirt_error_handler(ctx, error):
    """
    Suppress libvirt's default stderr printing; errors are raised and
    classified instead.
    """
    pass


_event_loop_lock = threading.Lock()
_event_loop_started = False


def _start_event_loop() -> None:
    """
    Register libvirt's default event implementation and run it in a
    daemon thread. Must happen before the connection is opened or no
    lifecycle callbacks are ever delivered.
    """
    global _event_loop_started

    with _event_loop_lock:
        if _event_loop_started:
            return
        libvirt.virEventRegisterDefaultImpl()

        def loop() -> None:
            log_event("[libvirt] Starting event loop thread")
            while True:
                libvirt.virEventRunDefaultImpl()

        t = threading.Thread(target=loop, name="libvirt-events", daemon=True)
        t.start()
        _event_loop_started = True


class LibvirtBackend:
    """
    Thin, synchronous wrapper over a libvirt connection.

    The connection is shared by all callers, including worker threads;
    libvirt connections are safe for concurrent use.
    """

    def __init__(self, uri: str) -> None:
        libvirt.registerErrorHandler(_libvirt_error_handler, None)
        _start_event_loop()

        try:
            self.conn = libvirt.open(uri)
        except libvirt.libvirtError as e:
            raise BackendError(f"libvirt connection error: {e}") from e
        if self.conn is None:
            raise BackendError(f"Failed to connect to hypervisor via libvirt URI: {uri}")
        log_event(f"[libvirt] Connected to hypervisor via libvirt URI={uri}")

    def close(self) -> None:
        try:
            self.conn.close()
        except libvirt.libvirtError as e:
            log_event(f"[libvirt] Error closing connection: {e}")

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    @_backend_call("could not get storage pool")
    def lookup_pool(self, name: str):
        return self.conn.storagePoolLookupByName(name)

    @_backend_call("could not create volume")
    def create_volume(self, pool, xml: str):
        return pool.createXML(xml, 0)

    @_backend_call("could not get volume")
    def lookup_volume(self, pool, name: str):
        return pool.storageVolLookupByName(name)

    @_backend_call("could not get volume path")
    def volume_path(self, volume) -> str:
        return volume.path()

    @_backend_call("failed to transfer data to volume")
    def upload_volume(self, volume, data: bytes) -> None:
        stream = self.conn.newStream(0)
        volume.upload(stream, 0, len(data), 0)
        try:
            offset = 0
            while offset < len(data):
                sent = stream.send(data[offset:])
                if sent < 0:
                    raise BackendError("volume upload stream refused data")
                offset += sent
            stream.finish()
        except Exception:
            try:
                stream.abort()
            except libvirt.libvirtError as e:
                log_event(f"[libvirt] Error aborting volume upload stream: {e}")
            raise

    @_backend_call("could not delete volume")
    def delete_volume(self, volume) -> None:
        volume.delete(0)

    # ------------------------------------------------------------------
    # Domains
    # ------------------------------------------------------------------
    @_backend_call("could not define domain")
    def define_domain(self, xml: str):
        dom = self.conn.defineXML(xml)
        if dom is None:
            raise BackendError("Failed to define libvirt domain from XML")
        return dom

    @_backend_call("could not get domain")
    def lookup_domain(self, name: str):
        return self.conn.lookupByName(name)

    @_backend_call("could not list domains")
    def list_domains(self) -> List[Any]:
        return self.conn.listAllDomains()

    @_backend_call("could not start domain")
    def start_domain(self, dom) -> None:
        dom.create()

    @_backend_call("could not destroy domain")
    def destroy_domain(self, dom) -> None:
        dom.destroy()

    @_backend_call("could not shut down domain")
    def shutdown_domain(self, dom) -> None:
        dom.shutdown()

    @_backend_call("could not undefine domain")
    def undefine_domain(self, dom) -> None:
        dom.undefine()

    @_backend_call("could not check if domain is active")
    def is_active(self, dom) -> bool:
        return bool(dom.isActive())

    @_backend_call("could not check if domain is persistent")
    def is_persistent(self, dom) -> bool:
        return bool(dom.isPersistent())

    @_backend_call("could not read domain")
    def domain_name(self, dom) -> str:
        return dom.name()

    @_backend_call("could not read domain")
    def domain_uuid(self, dom) -> str:
        return dom.UUIDString()

    @_backend_call("could not read domain description")
    def domain_xml(self, dom) -> str:
        return dom.XMLDesc(0)

    @_backend_call("could not read domain info")
    def domain_info(self, dom) -> Dict[str, int]:
        state, max_memory, memory, vcpus, cpu_time = dom.info()
        return {
            "state": state,
            "max_memory": max_memory,
            "memory": memory,
            "vcpus": vcpus,
            "cpu_time": cpu_time,
        }

    @_backend_call("could not list snapshots")
    def list_snapshots(self, dom) -> List[Any]:
        return dom.listAllSnapshots(0)

    @_backend_call("could not read snapshot")
    def snapshot_name(self, snapshot) -> str:
        return snapshot.getName()

    @_backend_call("could not delete snapshot")
    def delete_snapshot(self, snapshot) -> None:
        snapshot.delete(0)

    @contextmanager
    def lifecycle_events(self) -> Iterator["queue.Queue[LifecycleEvent]"]:
        """
        Subscribe to lifecycle events of all domains for the duration of
        the ``with`` block. Events arrive on the yielded queue from the
        libvirt event loop thread.
        """
        events: "queue.Queue[LifecycleEvent]" = queue.Queue()

        def callback(conn, dom, event, detail, opaque) -> None:
            kind = _EVENT_KINDS.get(event)
            if kind is None:
                return
            opaque.put(LifecycleEvent(dom.UUIDString(), dom.name(), kind))

        try:
            callback_id = self.conn.domainEventRegisterAny(
                None, libvirt.VIR_DOMAIN_EVENT_ID_LIFECYCLE, callback, events
            )
        except libvirt.libvirtError as e:
            raise classify_error(e, "could not start waiting for events") from e

        try:
            yield events
        finally:
            try:
                self.conn.domainEventDeregisterAny(callback_id)
            except libvirt.libvirtError as e:
                log_event(f"[libvirt] Failed to deregister event callback: {e}")

    # ------------------------------------------------------------------
    # Networks
    # ------------------------------------------------------------------
    @_backend_call("could not get network")
    def lookup_network(self, name: str):
        return self.conn.networkLookupByName(name)

    @_backend_call("could not get network description")
    def network_xml(self, network) -> str:
        return network.XMLDesc(0)

    @_backend_call("could not get DHCP leases")
    def dhcp_leases(self, network, mac: Optional[str] = None) -> List[Dict[str, Any]]:
        return network.DHCPLeases(mac) if mac else network.DHCPLeases()

    @_backend_call("could not add DHCP entry")
    def add_dhcp_host(self, network, host_xml: str) -> None:
        network.update(
            libvirt.VIR_NETWORK_UPDATE_COMMAND_ADD_LAST,
            libvirt.VIR_NETWORK_SECTION_IP_DHCP_HOST,
            -1,
            host_xml,
            _DHCP_HOST_FLAGS,
        )

    @_backend_call("could not remove DHCP entry")
    def remove_dhcp_host(self, network, host_xml: str) -> None:
        network.update(
            libvirt.VIR_NETWORK_UPDATE_COMMAND_DELETE,
            libvirt.VIR_NETWORK_SECTION_IP_DHCP_HOST,
            -1,
            host_xml,
            _DHCP_HOST_FLAGS,
        )
