import asyncio
import fcntl
import io
import os
import struct
import termios
from unittest import mock

import pytest

from core.errors import PreconditionError, RemoteExecutionError
from core.network import NetworkCoordinator
from core.session import InteractiveSession, forward_resizes, raw_terminal, terminal_size
from core.ssh import SSHCredentials


@pytest.fixture
def pty():
    master, slave = os.openpty()
    fcntl.ioctl(slave, termios.TIOCSWINSZ, struct.pack("HHHH", 40, 120, 0, 0))
    yield master, slave
    os.close(master)
    os.close(slave)


class FakeStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    async def read(self, n):
        return self._chunks.pop(0) if self._chunks else b""


class FakeProcess:
    def __init__(self, exit_status=0, stdout=()):
        self.stdin = mock.Mock()
        self.stdout = FakeStream(stdout)
        self.stderr = FakeStream(())
        self.change_terminal_size = mock.Mock()
        self._exit_status = exit_status

    async def wait(self):
        return mock.Mock(exit_status=self._exit_status)


class FakeConnection:
    def __init__(self, process):
        self.process = process
        self.create_kwargs = None

    async def create_process(self, **kwargs):
        self.create_kwargs = kwargs
        return self.process

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def test_raw_terminal_restores_settings(pty):
    _, slave = pty
    before = termios.tcgetattr(slave)
    with pytest.raises(RuntimeError):
        with raw_terminal(slave):
            assert termios.tcgetattr(slave) != before
            raise RuntimeError("boom")
    assert termios.tcgetattr(slave) == before


def test_terminal_size(pty):
    _, slave = pty
    assert terminal_size(slave) == (120, 40)


def test_forward_resizes_until_stopped(pty):
    _, slave = pty
    process = FakeProcess()

    async def scenario():
        resizes = asyncio.Queue()
        task = asyncio.create_task(forward_resizes(process, resizes, slave))
        resizes.put_nowait(True)
        resizes.put_nowait(True)
        resizes.put_nowait(None)
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())
    assert process.change_terminal_size.call_args_list == [mock.call(120, 40), mock.call(120, 40)]


def test_forward_resizes_survives_unreadable_terminal(pty):
    _, slave = pty
    process = FakeProcess()
    sizes = iter([OSError("detached"), (100, 30)])

    def fake_size(fd):
        size = next(sizes)
        if isinstance(size, Exception):
            raise size
        return size

    async def scenario():
        resizes = asyncio.Queue()
        task = asyncio.create_task(forward_resizes(process, resizes, slave))
        for notification in (True, True, None):
            resizes.put_nowait(notification)
        await asyncio.wait_for(task, timeout=1)

    with mock.patch("core.session.terminal_size", side_effect=fake_size):
        asyncio.run(scenario())
    assert process.change_terminal_size.call_args_list == [mock.call(100, 30)]


def test_session_streams_output_and_returns_exit_status(backend, pty):
    _, slave = pty
    backend.add_running_vm("vm1", 5, ip="192.168.122.5")
    process = FakeProcess(exit_status=3, stdout=[b"hello\r\n"])
    conn = FakeConnection(process)
    out = io.BytesIO()

    session = InteractiveSession(
        NetworkCoordinator(backend, "default"),
        SSHCredentials(),
        stdin_fd=slave,
        stdout=out,
        stderr=io.BytesIO(),
    )
    before = termios.tcgetattr(slave)
    with mock.patch("core.session.connect", return_value=conn) as connect:
        assert asyncio.run(session.run("vm1")) == 3

    assert connect.call_args.args[0] == "192.168.122.5"
    assert out.getvalue() == b"hello\r\n"
    assert conn.create_kwargs["term_size"] == (120, 40)
    assert conn.create_kwargs["encoding"] is None
    assert termios.tcgetattr(slave) == before


def test_session_requires_terminal(backend):
    backend.add_running_vm("vm1", 5, ip="192.168.122.5")
    read_fd, write_fd = os.pipe()
    try:
        session = InteractiveSession(NetworkCoordinator(backend, "default"), stdin_fd=read_fd)
        with pytest.raises(PreconditionError, match="terminal"):
            asyncio.run(session.run("vm1"))
    finally:
        os.close(read_fd)
        os.close(write_fd)


def test_session_on_stopped_vm(backend, pty):
    _, slave = pty
    backend.add_running_vm("vm1", 5, ip="192.168.122.5", active=False)
    session = InteractiveSession(NetworkCoordinator(backend, "default"), stdin_fd=slave)
    with pytest.raises(PreconditionError, match="not running"):
        asyncio.run(session.run("vm1"))


def test_session_connection_failure(backend, pty):
    _, slave = pty
    backend.add_running_vm("vm1", 5, ip="192.168.122.5")
    session = InteractiveSession(
        NetworkCoordinator(backend, "default"), stdin_fd=slave, stdout=io.BytesIO(), stderr=io.BytesIO()
    )
    with mock.patch("core.session.connect", side_effect=OSError("no route to host")):
        with pytest.raises(RemoteExecutionError, match="no route to host"):
            asyncio.run(session.run("vm1"))
