import time
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

# -----------------------------
# HTTP / API level metrics
# -----------------------------
REQUEST_COUNT = Counter(
    "vm_provisioner_requests_total",
    "Total HTTP requests to vm-provisioner",
    ["method", "endpoint"],
)

REQUEST_LATENCY = Histogram(
    "vm_provisioner_request_latency_seconds",
    "Latency of HTTP requests to vm-provisioner",
    ["endpoint"],
)


# -----------------------------
# VM lifecycle metrics
# -----------------------------
VM_CREATED_TOTAL = Counter(
    "vm_created_total",
    "Total number of VMs created",
    ["image"],
)

VM_REMOVED_TOTAL = Counter(
    "vm_removed_total",
    "Total number of VMs removed",
)

VM_COMMITTED_TOTAL = Counter(
    "vm_committed_total",
    "Total number of VMs committed to images",
)

VM_LAST_ACTIVITY = Gauge(
    "vm_last_activity_timestamp",
    "UNIX timestamp of the last VM lifecycle operation",
)

# -----------------------------
# Provisioning metrics
# -----------------------------
PROVISION_STEPS_TOTAL = Counter(
    "vm_provision_steps_total",
    "Provisioning steps executed, by kind and result",
    ["kind", "result"],
)

PROVISION_DURATION = Histogram(
    "vm_provision_step_duration_seconds",
    "Wall clock duration of a provisioning step across all targets",
    ["kind"],
)

SSH_SESSIONS_ACTIVE = Gauge(
    "vm_ssh_sessions_active",
    "Number of active interactive SSH sessions",
    ["vm_name"],
)


def record_vm_created(image: Optional[str]) -> None:
    VM_CREATED_TOTAL.labels(image=image or "unknown").inc()
    VM_LAST_ACTIVITY.set(time.time())


def record_vm_removed() -> None:
    VM_REMOVED_TOTAL.inc()
    VM_LAST_ACTIVITY.set(time.time())


def record_vm_committed() -> None:
    VM_COMMITTED_TOTAL.inc()
    VM_LAST_ACTIVITY.set(time.time())


def record_provision_step(kind: str, result: str, duration: float) -> None:
    PROVISION_STEPS_TOTAL.labels(kind=kind, result=result).inc()
    PROVISION_DURATION.labels(kind=kind).observe(duration)


def record_ssh_session_change(vm_name: str, delta: int) -> None:
    gauge = SSH_SESSIONS_ACTIVE.labels(vm_name=vm_name)
    if delta >= 0:
        gauge.inc(delta)
    else:
        gauge.dec(-delta)
