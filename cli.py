"""Command line entry points for vm-provisioner."""

import argparse
import asyncio
import sys
from typing import Dict, List, Optional

from config.settings import (
    DEFAULT_MEMORY_KIB,
    DEFAULT_VCPU,
    SHUTDOWN_TIMEOUT,
    SSH_WAIT_TIMEOUT,
)
from core.errors import VMError
from core.logger import enable_console_logging, log_event
from core.models import DockerContainerConfig, RsyncStep, ShellStep, VMConfig
from core.services import Services, build_services


def _parse_env(pairs: Optional[List[str]]) -> Dict[str, str]:
    env: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"environment entry must be KEY=VALUE (got '{pair}')")
        env[key] = value
    return env


def _read_keys(paths: Optional[List[str]]) -> List[str]:
    keys = []
    for path in paths or []:
        with open(path, encoding="utf-8") as f:
            keys.extend(line.strip() for line in f if line.strip())
    return keys


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision short-lived libvirt VMs")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Create and start a VM")
    run.add_argument("image", help="Backing image volume name")
    run.add_argument("--name", required=True, help="VM name")
    run.add_argument("--id", type=int, required=True, help="Numeric VM ID (selects MAC and IP)")
    run.add_argument("--memory-kib", type=int, default=DEFAULT_MEMORY_KIB)
    run.add_argument("--vcpus", type=int, default=DEFAULT_VCPU)
    run.add_argument("--ssh-public-key-file", action="append", dest="key_files", default=[])
    run.add_argument("--wait-ssh", action="store_true", help="Wait until the SSH port is open")
    run.add_argument("--wait-timeout", type=float, default=SSH_WAIT_TIMEOUT)

    rm = sub.add_parser("rm", help="Remove a VM and all of its volumes")
    rm.add_argument("name")

    commit = sub.add_parser("commit", help="Turn a stopped VM into an image")
    commit.add_argument("name")
    commit.add_argument("--shutdown", action="store_true", help="Shut the VM down first")
    commit.add_argument("--shutdown-timeout", type=float, default=SHUTDOWN_TIMEOUT)

    ssh = sub.add_parser("ssh", help="Open an interactive shell on a VM")
    ssh.add_argument("name")

    shell = sub.add_parser("exec-shell", help="Run a shell script on VMs")
    shell.add_argument("names", nargs="+")
    shell.add_argument("--script", required=True)
    shell.add_argument("--env", action="append", metavar="KEY=VALUE")

    rsync = sub.add_parser("exec-rsync", help="Copy files into VMs")
    rsync.add_argument("names", nargs="+")
    rsync.add_argument("--source", required=True, help="Local glob pattern")
    rsync.add_argument("--dest", required=True)

    docker = sub.add_parser("exec-docker", help="Run a container against VMs")
    docker.add_argument("names", nargs="+")
    docker.add_argument("--image", required=True)
    docker.add_argument("--env", action="append", metavar="KEY=VALUE")

    return parser


def dispatch(args: argparse.Namespace, services: Services) -> int:
    if args.command == "run":
        vm = VMConfig(
            name=args.name,
            vm_id=args.id,
            image_name=args.image,
            memory_kib=args.memory_kib,
            vcpus=args.vcpus,
            ssh_public_keys=tuple(_read_keys(args.key_files)),
        )
        info = services.controller.run(vm, wait_ssh=args.wait_ssh, wait_timeout=args.wait_timeout)
        print(f"{info['name']} {info['ip']} {info['mac']}")
        return 0

    if args.command == "rm":
        services.controller.rm(args.name)
        return 0

    if args.command == "commit":
        image = services.controller.commit(
            args.name, shutdown=args.shutdown, shutdown_timeout=args.shutdown_timeout
        )
        print(image)
        return 0

    if args.command == "ssh":
        return asyncio.run(services.interactive_session().run(args.name))

    if args.command == "exec-shell":
        step = ShellStep(script=args.script, env=_parse_env(args.env))
        asyncio.run(services.executor.exec_shell(args.names, step))
        return 0

    if args.command == "exec-rsync":
        step = RsyncStep(source=args.source, dest=args.dest)
        asyncio.run(services.executor.exec_rsync(args.names, step))
        return 0

    if args.command == "exec-docker":
        config = DockerContainerConfig(image=args.image, env=_parse_env(args.env))
        asyncio.run(services.executor.exec_docker(args.names, config))
        return 0

    raise ValueError(f"unknown command {args.command}")


def main(argv: Optional[List[str]] = None, services: Optional[Services] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # the interactive session owns the terminal, keep log output off it
    if args.command != "ssh":
        enable_console_logging()

    try:
        services = services or build_services()
    except VMError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    try:
        return dispatch(args, services)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except (VMError, ValueError, OSError) as e:
        log_event(f"[cli] {args.command} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        services.close()
    return 1


if __name__ == "__main__":
    sys.exit(main())
