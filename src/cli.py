#!/usr/bin/env python3
"""CLI entry point for swarm-driver.

Usage:
    swarm-driver [global options] <command> [options]

Commands:
- setup: Provision a new cluster (Consul, Vault, Docker Swarm)
- reboot: Reboot nodes and wait for them to come back
- exec: Run a command as root on nodes
- health: Check node services
- vault: Vault utilities (unseal/status)
- upload: Upload a file to nodes
- shell: Pass commands through an interactive shell on a node
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

from commands import get_command, list_commands
from config import ConfigError, build_context
from remote.errors import RemoteError

logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
    except OSError:
        return 'dev'
    return result.stdout.strip() if result.returncode == 0 else 'dev'


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def print_usage():
    """Print top-level usage showing the commands."""
    print(f"swarm-driver {get_version()}")
    print()
    print("Usage: swarm-driver --cluster <file> <command> [options]")
    print()
    print("Commands:")
    for name in list_commands():
        print(f"  {name:<12} {get_command(name).description}")
    print()
    print("Run 'swarm-driver <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  swarm-driver --cluster prod.yaml setup")
    print("  swarm-driver --cluster prod.yaml health --managers")
    print("  swarm-driver --cluster prod.yaml exec -n worker-0 -- docker ps")
    print("  swarm-driver --cluster prod.yaml vault unseal")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='swarm-driver',
        description='Docker Swarm cluster bootstrap and maintenance',
    )
    parser.add_argument(
        '--cluster', '-c',
        type=Path,
        help='Cluster definition file (YAML or JSON)'
    )
    parser.add_argument(
        '--user', '-u',
        help='SSH user (overrides settings.yaml and SWARM_DRIVER_USER)'
    )
    parser.add_argument(
        '--key', '-k',
        dest='key_file',
        help='SSH private key file'
    )
    parser.add_argument(
        '--max-parallel', '-P',
        type=int,
        help='Maximum number of nodes a step runs on at once'
    )
    parser.add_argument(
        '--log-dir',
        type=Path,
        help='Directory for per-node log files'
    )
    parser.add_argument(
        '--report-dir', '-r',
        type=Path,
        help='Directory for run reports (default: $SWARM_DRIVER_HOME/reports)'
    )
    parser.add_argument(
        '--settings',
        type=Path,
        help='Settings file (default: $SWARM_DRIVER_HOME/settings.yaml)'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    sub = parser.add_subparsers(dest='command')
    for name in list_commands():
        command = get_command(name)
        command.build_parser(sub.add_parser(name, help=command.description))
    return parser


def main(argv: Optional[list] = None) -> int:
    """CLI entry point. Returns the process exit code."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print_usage()
        return 0

    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    if args.command is None:
        print_usage()
        return 1

    command = get_command(args.command)
    try:
        context = build_context(
            overrides={
                'user': args.user,
                'key_file': args.key_file,
                'max_parallel': args.max_parallel,
                'log_dir': args.log_dir,
                'report_dir': args.report_dir,
            },
            settings_path=args.settings,
        )
        if command.needs_ssh_credentials and not context.credentials.user:
            raise ConfigError("An SSH user is required (--user, SWARM_DRIVER_USER or settings.yaml)")
        return command.run(args, context)
    except (ConfigError, RemoteError) as e:
        print(f"*** ERROR: {e}", file=sys.stderr)
        return 1
    except KeyError as e:
        print(f"*** ERROR: {e.args[0] if e.args else e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
