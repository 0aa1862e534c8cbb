import asyncio
import os
import signal
import sys
import termios
import tty
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional, Tuple

import asyncssh

from core.errors import PreconditionError, RemoteExecutionError
from core.logger import log_event
from core.metrics import record_ssh_session_change
from core.network import NetworkCoordinator
from core.ssh import SSHCredentials, connect

READ_SIZE = 4096


@contextmanager
def raw_terminal(fd: int) -> Iterator[None]:
    """Put the terminal on ``fd`` into raw mode, always restoring it."""
    saved = termios.tcgetattr(fd)
    try:
        tty.setraw(fd)
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def terminal_size(fd: int) -> Tuple[int, int]:
    size = os.get_terminal_size(fd)
    return size.columns, size.lines


async def forward_resizes(process, resizes: "asyncio.Queue[Optional[bool]]", fd: int) -> None:
    """
    Push the local terminal size to the remote PTY after every resize
    notification. A ``None`` on the queue stops the loop.
    """
    while True:
        notification = await resizes.get()
        if notification is None:
            return
        try:
            cols, rows = terminal_size(fd)
        except OSError as e:
            log_event(f"[ssh] Could not read local terminal size: {e}")
            continue
        process.change_terminal_size(cols, rows)


async def _pump(reader, writer: BinaryIO) -> None:
    while True:
        data = await reader.read(READ_SIZE)
        if not data:
            return
        writer.write(data)
        writer.flush()


class InteractiveSession:
    """
    Interactive shell on one running VM, attached to the local terminal.
    """

    def __init__(
        self,
        network: NetworkCoordinator,
        credentials: Optional[SSHCredentials] = None,
        stdin_fd: Optional[int] = None,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
    ) -> None:
        self.network = network
        self.credentials = credentials or SSHCredentials()
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout = stdout or sys.stdout.buffer
        self.stderr = stderr or sys.stderr.buffer

    def _on_input(self, process, loop: asyncio.AbstractEventLoop) -> None:
        data = os.read(self.stdin_fd, READ_SIZE)
        if not data:
            loop.remove_reader(self.stdin_fd)
            process.stdin.write_eof()
            return
        process.stdin.write(data)

    async def run(self, vm_name: str) -> int:
        """
        Run the session until the remote shell exits or the connection
        drops. Returns the remote exit status.
        """
        ips = await asyncio.to_thread(self.network.resolve_targets, [vm_name])
        if len(ips) != 1:
            raise PreconditionError("expected a single IP")
        address = ips[0]

        if not os.isatty(self.stdin_fd):
            raise PreconditionError("an interactive session needs a terminal on stdin")

        loop = asyncio.get_running_loop()
        record_ssh_session_change(vm_name, +1)
        log_event(f"[ssh] Opening interactive session to '{vm_name}' at {address}")
        try:
            async with connect(address, self.credentials) as conn:
                cols, rows = terminal_size(self.stdin_fd)
                with raw_terminal(self.stdin_fd):
                    process = await conn.create_process(
                        term_type=os.environ.get("TERM", "xterm"),
                        term_size=(cols, rows),
                        encoding=None,
                    )

                    resizes: "asyncio.Queue[Optional[bool]]" = asyncio.Queue()
                    loop.add_signal_handler(signal.SIGWINCH, resizes.put_nowait, True)
                    resize_task = asyncio.create_task(
                        forward_resizes(process, resizes, self.stdin_fd)
                    )
                    loop.add_reader(self.stdin_fd, self._on_input, process, loop)
                    try:
                        await asyncio.gather(
                            _pump(process.stdout, self.stdout),
                            _pump(process.stderr, self.stderr),
                        )
                        result = await process.wait()
                    finally:
                        loop.remove_reader(self.stdin_fd)
                        loop.remove_signal_handler(signal.SIGWINCH)
                        resizes.put_nowait(None)
                        await resize_task
        except (OSError, asyncssh.Error) as e:
            raise RemoteExecutionError(f"SSH session to {address} failed: {e}") from e
        finally:
            record_ssh_session_change(vm_name, -1)
            log_event(f"[ssh] Session to '{vm_name}' closed")

        return result.exit_status if result.exit_status is not None else 255
