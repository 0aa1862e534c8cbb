from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from core.naming import MAX_VM_ID


@dataclass(frozen=True)
class VMConfig:
    """
    Everything needed to create one VM.

    ``name`` is the root of every derived resource name and ``vm_id``
    determines the MAC address (and therefore the reserved IP address).
    """

    name: str
    vm_id: int
    image_name: str
    memory_kib: int
    vcpus: int
    ssh_public_keys: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not 0 <= self.vm_id <= MAX_VM_ID:
            raise ValueError(f"VM ID {self.vm_id} must be between 0 and {MAX_VM_ID}")
        # accept any iterable of keys but store a hashable tuple
        object.__setattr__(self, "ssh_public_keys", tuple(self.ssh_public_keys))


@dataclass
class ShellStep:
    script: str
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class RsyncStep:
    source: str
    dest: str


@dataclass
class DockerContainerConfig:
    image: str
    env: Dict[str, str] = field(default_factory=dict)
    command: Optional[List[str]] = None
    # container name prefix, suffixed with the target address
    name: str = "vm-provision"


EVENT_STOPPED = "stopped"


@dataclass(frozen=True)
class LifecycleEvent:
    domain_uuid: str
    domain_name: str
    kind: str
