import threading

import pytest

from core.errors import DeadlineExceeded
from core.models import EVENT_STOPPED, LifecycleEvent
from core.shutdown import ShutdownMonitor


def test_already_stopped_domain_returns_without_shutdown(backend):
    dom = backend.add_running_vm("vm1", 5, active=False)
    ShutdownMonitor(backend).shutdown(dom, timeout=1)
    assert backend.ops("shutdown_domain") == []
    assert backend.subscriptions == []


def test_subscribes_before_checking_activity(backend):
    dom = backend.add_running_vm("vm1", 5)
    ShutdownMonitor(backend).shutdown(dom, timeout=1)
    ops = [op for op, _ in backend.ops("subscribe", "is_active", "shutdown_domain", "unsubscribe")]
    assert ops == ["subscribe", "is_active", "shutdown_domain", "unsubscribe"]


def test_waits_for_stop_event_of_its_own_domain(backend):
    backend.emit_stop_events = False
    dom = backend.add_running_vm("vm1", 5)
    other = backend.add_running_vm("vm2", 6)

    def stop_later():
        # an unrelated domain stopping must not end the wait
        backend.emit(LifecycleEvent(other.uuid, other.name, EVENT_STOPPED))
        backend.emit(LifecycleEvent(dom.uuid, dom.name, EVENT_STOPPED))

    timer = threading.Timer(0.05, stop_later)
    original = backend.shutdown_domain

    def shutdown_and_schedule(domain):
        original(domain)
        timer.start()

    backend.shutdown_domain = shutdown_and_schedule
    try:
        ShutdownMonitor(backend).shutdown(dom, timeout=5)
    finally:
        timer.cancel()
    assert backend.subscriptions == []


def test_times_out_without_stop_event(backend):
    backend.emit_stop_events = False
    dom = backend.add_running_vm("vm1", 5)
    with pytest.raises(DeadlineExceeded, match="timed out waiting for domain to stop"):
        ShutdownMonitor(backend).shutdown(dom, timeout=0.1)
    assert backend.subscriptions == []


def test_deadline_uses_injected_clock(backend):
    backend.emit_stop_events = False
    dom = backend.add_running_vm("vm1", 5)
    ticks = iter([0.0, 100.0])
    with pytest.raises(DeadlineExceeded):
        ShutdownMonitor(backend, clock=lambda: next(ticks)).shutdown(dom, timeout=10)
