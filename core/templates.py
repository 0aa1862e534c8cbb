"""
Rendering of cloud-init documents and libvirt XML descriptors.

Each template kind takes exactly one typed parameter class. Rendering is
deterministic and free of side effects; failures propagate unchanged.
"""

import enum
from dataclasses import dataclass
from string import Template
from typing import Any, Dict, Tuple, Type
from xml.sax.saxutils import quoteattr

import yaml

from config.settings import BOOT_VOLUME_GIB, SCRATCH_VOLUME_GIB
from core.naming import volume_names


class TemplateKind(enum.Enum):
    META_DATA = "meta-data"
    USER_DATA = "user-data"
    CIDATA_VOLUME = "volume-cidata.xml"
    VM_VOLUME = "volume-vm.xml"
    SCRATCH_VOLUME = "volume-scratch.xml"
    DOMAIN = "vm.xml"


# ------------------------------------------------------------------
# Parameter sets
# ------------------------------------------------------------------
@dataclass(frozen=True)
class MetaDataParams:
    vm_name: str


@dataclass(frozen=True)
class UserDataParams:
    vm_name: str
    ssh_public_keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CIDataVolumeParams:
    volume_name: str


@dataclass(frozen=True)
class VMVolumeParams:
    volume_name: str
    backing_path: str


@dataclass(frozen=True)
class ScratchVolumeParams:
    volume_name: str


@dataclass(frozen=True)
class DomainParams:
    pool_name: str
    vm_name: str
    mac: str
    memory_kib: int
    vcpus: int
    network_name: str = "default"


# ------------------------------------------------------------------
# XML descriptors
# ------------------------------------------------------------------
# All substituted values are passed through quoteattr(), which supplies
# the surrounding quotes for attributes; element text uses _text().
CIDATA_VOLUME_XML = Template(
    """<volume>
  <name>$volume_name</name>
  <capacity unit='MiB'>2</capacity>
  <target>
    <format type='raw'/>
  </target>
</volume>
"""
)

VM_VOLUME_XML = Template(
    """<volume>
  <name>$volume_name</name>
  <capacity unit='GiB'>$capacity_gib</capacity>
  <target>
    <format type='qcow2'/>
  </target>
  <backingStore>
    <path>$backing_path</path>
    <format type='qcow2'/>
  </backingStore>
</volume>
"""
)

SCRATCH_VOLUME_XML = Template(
    """<volume>
  <name>$volume_name</name>
  <capacity unit='GiB'>$capacity_gib</capacity>
  <target>
    <format type='qcow2'/>
  </target>
</volume>
"""
)

DOMAIN_XML = Template(
    """<domain type='kvm'>
  <name>$vm_name</name>
  <memory unit='KiB'>$memory_kib</memory>
  <vcpu>$vcpus</vcpu>
  <os>
    <type arch='x86_64'>hvm</type>
    <boot dev='hd'/>
  </os>
  <features>
    <acpi/>
    <apic/>
  </features>
  <on_poweroff>destroy</on_poweroff>
  <on_reboot>restart</on_reboot>
  <on_crash>destroy</on_crash>
  <devices>
    <disk type='volume' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source pool=$pool_attr volume=$boot_attr/>
      <target dev='vda' bus='virtio'/>
    </disk>
    <disk type='volume' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source pool=$pool_attr volume=$scratch_attr/>
      <target dev='vdb' bus='virtio'/>
    </disk>
    <disk type='volume' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source pool=$pool_attr volume=$cidata_attr/>
      <target dev='sda' bus='sata'/>
      <readonly/>
    </disk>
    <interface type='network'>
      <mac address=$mac_attr/>
      <source network=$network_attr/>
      <model type='virtio'/>
    </interface>
    <serial type='pty'>
      <target port='0'/>
    </serial>
    <console type='pty'/>
    <graphics type='vnc' port='-1' autoport='yes'/>
  </devices>
</domain>
"""
)


def _text(value: Any) -> str:
    return quoteattr(str(value))[1:-1]


def _render_meta_data(params: MetaDataParams) -> str:
    return yaml.safe_dump(
        {
            "instance-id": params.vm_name,
            "local-hostname": params.vm_name,
        },
        default_flow_style=False,
        sort_keys=False,
    )


def _render_user_data(params: UserDataParams) -> str:
    document = {
        "hostname": params.vm_name,
        "disable_root": False,
        "ssh_pwauth": False,
        "users": [
            {
                "name": "root",
                "ssh_authorized_keys": list(params.ssh_public_keys),
            }
        ],
    }
    # cloud-init only treats the document as cloud-config with this header
    return "#cloud-config\n" + yaml.safe_dump(
        document, default_flow_style=False, sort_keys=False
    )


def _render_cidata_volume(params: CIDataVolumeParams) -> str:
    return CIDATA_VOLUME_XML.substitute(volume_name=_text(params.volume_name))


def _render_vm_volume(params: VMVolumeParams) -> str:
    return VM_VOLUME_XML.substitute(
        volume_name=_text(params.volume_name),
        backing_path=_text(params.backing_path),
        capacity_gib=BOOT_VOLUME_GIB,
    )


def _render_scratch_volume(params: ScratchVolumeParams) -> str:
    return SCRATCH_VOLUME_XML.substitute(
        volume_name=_text(params.volume_name),
        capacity_gib=SCRATCH_VOLUME_GIB,
    )


def _render_domain(params: DomainParams) -> str:
    names = volume_names(params.vm_name)
    return DOMAIN_XML.substitute(
        vm_name=_text(params.vm_name),
        memory_kib=int(params.memory_kib),
        vcpus=int(params.vcpus),
        pool_attr=quoteattr(params.pool_name),
        boot_attr=quoteattr(names.boot),
        scratch_attr=quoteattr(names.scratch),
        cidata_attr=quoteattr(names.cidata),
        mac_attr=quoteattr(params.mac),
        network_attr=quoteattr(params.network_name),
    )


_RENDERERS: Dict[TemplateKind, Tuple[Type, Any]] = {
    TemplateKind.META_DATA: (MetaDataParams, _render_meta_data),
    TemplateKind.USER_DATA: (UserDataParams, _render_user_data),
    TemplateKind.CIDATA_VOLUME: (CIDataVolumeParams, _render_cidata_volume),
    TemplateKind.VM_VOLUME: (VMVolumeParams, _render_vm_volume),
    TemplateKind.SCRATCH_VOLUME: (ScratchVolumeParams, _render_scratch_volume),
    TemplateKind.DOMAIN: (DomainParams, _render_domain),
}


def render(kind: TemplateKind, params: Any) -> str:
    """
    Render the document for ``kind`` from its parameter set.

    Passing a parameter object that belongs to another template kind is a
    programming error and raises ``TypeError``.
    """
    params_type, renderer = _RENDERERS[kind]
    if not isinstance(params, params_type):
        raise TypeError(
            f"template {kind.value} expects {params_type.__name__}, "
            f"got {type(params).__name__}"
        )
    return renderer(params)
