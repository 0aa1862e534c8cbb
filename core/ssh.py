import asyncio
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import asyncssh

from config.settings import VM_SSH_PORT, VM_SSH_PRIVATE_KEY, VM_SSH_USERNAME
from core.errors import RemoteExecutionError
from core.logger import log_event


@dataclass(frozen=True)
class SSHCredentials:
    username: str = VM_SSH_USERNAME
    private_key_path: str = VM_SSH_PRIVATE_KEY
    port: int = VM_SSH_PORT

    def private_key(self) -> bytes:
        return Path(self.private_key_path).expanduser().read_bytes()


def connect(address: str, credentials: SSHCredentials):
    """
    Open an SSH connection to a provisioned VM.

    Host keys are not checked: every VM is freshly created and gets a new
    host key, often on an address that a previous VM used.
    """
    return asyncssh.connect(
        address,
        port=credentials.port,
        username=credentials.username,
        client_keys=[str(Path(credentials.private_key_path).expanduser())],
        known_hosts=None,
        connect_timeout=30,
    )


def env_prelude(env: Dict[str, str]) -> str:
    """
    Shell statements that set and export ``env``.

    sshd usually refuses client-supplied environment variables, so they
    are set at the top of the script instead.
    """
    lines = []
    for key, value in env.items():
        lines.append(f"{key}={shlex.quote(str(value))}; export {key}\n")
    return "".join(lines)


async def _log_lines(reader, address: str, stream_name: str) -> None:
    async for line in reader:
        log_event(f"[ssh] {address} {stream_name}: {line.rstrip()}")


async def run_ssh_command(
    address: str,
    credentials: SSHCredentials,
    script: str,
    env: Dict[str, str],
) -> None:
    """
    Run ``script`` in a remote shell and stream its output to the log.

    A non-zero exit status, or an exit by signal, raises
    :class:`RemoteExecutionError`.
    """
    try:
        async with connect(address, credentials) as conn:
            async with conn.create_process() as process:
                process.stdin.write(env_prelude(env) + script + "\n")
                process.stdin.write_eof()

                await asyncio.gather(
                    _log_lines(process.stdout, address, "stdout"),
                    _log_lines(process.stderr, address, "stderr"),
                )
                result = await process.wait()
    except (OSError, asyncssh.Error) as e:
        raise RemoteExecutionError(f"SSH to {address} failed: {e}") from e

    if result.exit_status != 0:
        status = (
            f"exit status {result.exit_status}"
            if result.exit_status is not None
            else f"signal {result.exit_signal}"
        )
        raise RemoteExecutionError(f"script on {address} failed with {status}")
