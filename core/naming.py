from dataclasses import dataclass

# QEMU's locally administered OUI; the VM ID fills the remaining 24 bits
MAC_PREFIX = (0x52, 0x54, 0x00)
MAX_VM_ID = 0xFFFFFF


@dataclass(frozen=True)
class VolumeNames:
    boot: str
    scratch: str
    cidata: str


def boot_volume_name(vm_name: str) -> str:
    return vm_name


def scratch_volume_name(vm_name: str) -> str:
    return f"{vm_name}-scratch"


def cidata_volume_name(vm_name: str) -> str:
    return f"{vm_name}-cidata"


def volume_names(vm_name: str) -> VolumeNames:
    return VolumeNames(
        boot=boot_volume_name(vm_name),
        scratch=scratch_volume_name(vm_name),
        cidata=cidata_volume_name(vm_name),
    )


def qemu_mac(vm_id: int) -> str:
    """
    Derive the MAC address of a VM from its numeric ID.

    The ID is stored big-endian in the last three octets, so every ID in
    ``0..MAX_VM_ID`` maps to its own address and the mapping survives
    process restarts.
    """
    if not 0 <= vm_id <= MAX_VM_ID:
        raise ValueError(f"VM ID {vm_id} does not fit in 24 bits")

    octets = list(MAC_PREFIX) + list(vm_id.to_bytes(3, "big"))
    return ":".join(f"{octet:02x}" for octet in octets)
