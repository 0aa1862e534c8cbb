import asyncio
import shlex
from pathlib import Path
from typing import List

from core.errors import RemoteExecutionError
from core.logger import log_event
from core.ssh import SSHCredentials


class RsyncCopier:
    """
    Copy local files into a VM with the ``rsync`` binary over SSH.
    """

    def __init__(self, credentials: SSHCredentials, rsync_binary: str = "rsync") -> None:
        self.credentials = credentials
        self.rsync_binary = rsync_binary

    def command(self, address: str, files: List[str], dest: str) -> List[str]:
        key = str(Path(self.credentials.private_key_path).expanduser())
        ssh_cmd = " ".join(
            [
                "ssh",
                "-i",
                shlex.quote(key),
                "-p",
                str(self.credentials.port),
                "-o",
                "StrictHostKeyChecking=no",
                "-o",
                "UserKnownHostsFile=/dev/null",
                "-o",
                "LogLevel=ERROR",
            ]
        )
        return [
            self.rsync_binary,
            "--archive",
            "--compress",
            "-e",
            ssh_cmd,
            *files,
            f"{self.credentials.username}@{address}:{dest}",
        ]

    async def copy(self, address: str, files: List[str], dest: str) -> None:
        cmd = self.command(address, files, dest)
        log_event(f"[rsync] Running: {' '.join(shlex.quote(c) for c in cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise RemoteExecutionError(f"rsync not found: {e}") from e

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            combined = "\n".join(
                part
                for part in [stderr.decode(errors="replace").strip(), stdout.decode(errors="replace").strip()]
                if part
            ) or "unknown error"
            log_event(f"[rsync] FAILED for {address}: {combined}")
            raise RemoteExecutionError(f"rsync to {address} failed: {combined}")

        log_event(f"[rsync] Copied {len(files)} file(s) to {address}:{dest}")
