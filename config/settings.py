import os
from pathlib import Path

# -----------------------------
# Base paths
# -----------------------------
BASE_DIR = Path(__file__).resolve().parent.parent  # project root

# -----------------------------
# Logging
# -----------------------------
LOG_DIR = Path(os.getenv("VM_PROVISIONER_LOG_DIR", str(BASE_DIR / "log")))
LOG_DIR.mkdir(parents=True, exist_ok=True)

LOG_FILE = LOG_DIR / "vm-provisioner.log"

# -----------------------------
# Hypervisor / libvirt
# -----------------------------
# common examples:
#   qemu:///system                  (KVM/QEMU on host)
#   qemu+ssh://root@host/system     (remote KVM host)
LIBVIRT_URI = os.getenv("LIBVIRT_URI", "qemu:///system")

# Storage pool holding backing images and all per-VM volumes
STORAGE_POOL_NAME = os.getenv("STORAGE_POOL_NAME", "default")

# Managed network whose DHCP server hands out the reserved addresses
NETWORK_NAME = os.getenv("NETWORK_NAME", "default")

# -----------------------------
# VM defaults
# -----------------------------
DEFAULT_MEMORY_KIB = int(os.getenv("VM_DEFAULT_MEMORY_KIB", str(1024 * 1024)))
DEFAULT_VCPU = int(os.getenv("VM_DEFAULT_VCPU", "1"))

# Capacity of the empty scratch disk attached to every VM
SCRATCH_VOLUME_GIB = int(os.getenv("SCRATCH_VOLUME_GIB", "2"))

# Virtual size of the copy-on-write boot disk
BOOT_VOLUME_GIB = int(os.getenv("BOOT_VOLUME_GIB", "10"))

# -----------------------------
# SSH / remote execution
# -----------------------------
VM_SSH_PORT = int(os.getenv("VM_SSH_PORT", "22"))
VM_SSH_USERNAME = os.getenv("VM_SSH_USERNAME", "root")

VM_SSH_PRIVATE_KEY = os.getenv(
    "VM_SSH_PRIVATE_KEY",
    str(Path.home() / ".ssh" / "id_rsa"),
)

# -----------------------------
# Timeouts (seconds)
# -----------------------------
SSH_WAIT_TIMEOUT = float(os.getenv("SSH_WAIT_TIMEOUT", "300"))
SSH_WAIT_INTERVAL = float(os.getenv("SSH_WAIT_INTERVAL", "1"))
SHUTDOWN_TIMEOUT = float(os.getenv("SHUTDOWN_TIMEOUT", "300"))
DOCKER_TIMEOUT = float(os.getenv("DOCKER_TIMEOUT", "3600"))

# -----------------------------
# Metrics / monitoring
# -----------------------------
METRICS_ENABLED = os.getenv("METRICS_ENABLED", "true").lower() == "true"
