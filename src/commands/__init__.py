"""Command definitions and registry.

Each command is a class registered with @register_command. The CLI builds
one argparse subparser per command and calls run() with the parsed
arguments and the execution context for the invocation.
"""

import argparse
import logging
from typing import Iterable, Optional, Protocol, runtime_checkable

from cluster import ClusterProxy
from config import ClusterSecrets, ConfigError, ExecutionContext, get_secrets_path
from definition import load_cluster_definition
from remote.node import NodeHandle
from remote.options import RunOptions

logger = logging.getLogger(__name__)


@runtime_checkable
class Command(Protocol):
    """Protocol for CLI commands.

    Class attributes:
        name: Command name used on the command line (e.g., 'setup')
        description: One-line description for usage output
        needs_ssh_credentials: If True, the CLI refuses to run the command
            without an SSH user
    """
    name: str
    description: str
    needs_ssh_credentials: bool

    def build_parser(self, parser: argparse.ArgumentParser) -> None:
        """Add command-specific arguments."""
        ...

    def run(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        """Run the command. Returns the process exit code."""
        ...


def open_cluster(
    args: argparse.Namespace,
    context: ExecutionContext,
    default_options: RunOptions = RunOptions.NONE,
) -> ClusterProxy:
    """Load the cluster named by --cluster and connect a proxy to it.

    Saved cluster secrets are attached to the context when they exist.
    """
    if not getattr(args, 'cluster', None):
        raise ConfigError("A cluster definition is required (--cluster FILE)")
    definition = load_cluster_definition(args.cluster)
    secrets_path = get_secrets_path(definition.name)
    if context.secrets is None and secrets_path.exists():
        context.secrets = ClusterSecrets.load(secrets_path)
    return ClusterProxy.from_context(definition, context, default_options=default_options)


def select_nodes(
    cluster: ClusterProxy,
    names: Optional[Iterable[str]] = None,
    managers: bool = False,
    workers: bool = False,
) -> list[NodeHandle]:
    """Resolve node selection arguments. No selection means every node.

    Raises:
        KeyError: If a named node isn't part of the cluster
    """
    selected: list[NodeHandle] = []
    if managers:
        selected.extend(cluster.managers)
    if workers:
        selected.extend(cluster.workers)
    for name in names or []:
        node = cluster.get_node(name)
        if node not in selected:
            selected.append(node)
    return selected or list(cluster.nodes)


def add_node_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--node', '-n',
        action='append',
        default=[],
        metavar='NAME',
        help='Target node (repeatable; default: all nodes)'
    )
    parser.add_argument(
        '--managers',
        action='store_true',
        help='Target the manager nodes'
    )
    parser.add_argument(
        '--workers',
        action='store_true',
        help='Target the worker nodes'
    )


# Command registry
_commands: dict[str, type] = {}


def register_command(cls: type) -> type:
    """Decorator to register a command class."""
    _commands[cls.name] = cls
    return cls


def get_command(name: str) -> Command:
    """Get command instance by name."""
    if name not in _commands:
        raise KeyError(f"Unknown command: {name}. Available: {list(_commands.keys())}")
    return _commands[name]()


def list_commands() -> list[str]:
    """List registered command names."""
    return list(_commands.keys())


# Import commands to register them
from commands import setup  # noqa: E402, F401
from commands import reboot  # noqa: E402, F401
from commands import execute  # noqa: E402, F401
from commands import health  # noqa: E402, F401
from commands import vault  # noqa: E402, F401
from commands import upload  # noqa: E402, F401
from commands import shell  # noqa: E402, F401
