from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from config.settings import DEFAULT_MEMORY_KIB, DEFAULT_VCPU, SHUTDOWN_TIMEOUT, SSH_WAIT_TIMEOUT
from core.models import DockerContainerConfig, RsyncStep, ShellStep, VMConfig
from core.naming import MAX_VM_ID


class VMRunSchema(BaseModel):
    """
    Schema for creating and starting a new VM.

    ``id`` selects the MAC address and therefore the reserved IP address
    (network address + id), so it must be unique among running VMs.
    """

    name: str = Field(..., min_length=1, description="Unique VM name")
    id: int = Field(..., ge=1, le=MAX_VM_ID, description="Numeric VM ID (24 bit)")
    image: str = Field(..., min_length=1, description="Backing image volume name")
    memory_kib: int = Field(DEFAULT_MEMORY_KIB, ge=64 * 1024, description="RAM in KiB")
    vcpus: int = Field(DEFAULT_VCPU, ge=1, description="Number of virtual CPUs")
    ssh_public_keys: List[str] = Field(default_factory=list)
    wait_ssh: bool = Field(False, description="Block until the SSH port is open")
    wait_timeout: float = Field(SSH_WAIT_TIMEOUT, gt=0)

    def to_config(self) -> VMConfig:
        return VMConfig(
            name=self.name,
            vm_id=self.id,
            image_name=self.image,
            memory_kib=self.memory_kib,
            vcpus=self.vcpus,
            ssh_public_keys=tuple(self.ssh_public_keys),
        )


class VMCommitSchema(BaseModel):
    shutdown: bool = Field(False, description="Shut the VM down before committing")
    shutdown_timeout: float = Field(SHUTDOWN_TIMEOUT, gt=0)


class ShellExecSchema(BaseModel):
    vm_names: List[str] = Field(..., min_length=1)
    script: str
    env: Dict[str, str] = Field(default_factory=dict)

    def to_step(self) -> ShellStep:
        return ShellStep(script=self.script, env=dict(self.env))


class RsyncExecSchema(BaseModel):
    vm_names: List[str] = Field(..., min_length=1)
    source: str = Field(..., description="Local glob pattern")
    dest: str = Field(..., description="Destination path inside the VMs")

    def to_step(self) -> RsyncStep:
        return RsyncStep(source=self.source, dest=self.dest)


class DockerExecSchema(BaseModel):
    vm_names: List[str] = Field(..., min_length=1)
    image: str
    env: Dict[str, str] = Field(default_factory=dict)
    command: Optional[List[str]] = None

    def to_config(self) -> DockerContainerConfig:
        return DockerContainerConfig(image=self.image, env=dict(self.env), command=self.command)
