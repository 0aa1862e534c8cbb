import queue
import time

from core.errors import DeadlineExceeded
from core.logger import log_event
from core.models import EVENT_STOPPED


class ShutdownMonitor:
    """
    Gracefully stop a domain and block until libvirt reports it stopped.

    The event subscription is opened before the activity check. Checking
    first would lose a stop event that fires between the check and the
    subscription, and the wait would then never finish.
    """

    def __init__(self, backend, clock=time.monotonic) -> None:
        self.backend = backend
        self.clock = clock

    def shutdown(self, domain, timeout: float) -> None:
        with self.backend.lifecycle_events() as events:
            active = self.backend.is_active(domain)
            if not active:
                log_event("[vm] Domain already stopped, no shutdown needed")
                return

            name = self.backend.domain_name(domain)
            uuid = self.backend.domain_uuid(domain)

            log_event(f"[vm] Shut down VM '{name}'")
            self.backend.shutdown_domain(domain)

            log_event(f"[vm] Wait up to {timeout}s for VM '{name}' to stop")
            deadline = self.clock() + timeout
            while active:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    raise DeadlineExceeded("timed out waiting for domain to stop")
                try:
                    event = events.get(timeout=remaining)
                except queue.Empty:
                    raise DeadlineExceeded("timed out waiting for domain to stop") from None

                if event.domain_uuid == uuid and event.kind == EVENT_STOPPED:
                    log_event(f"[vm] VM '{name}' stopped")
                    active = False
