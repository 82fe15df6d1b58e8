"""exec: run a command as root across cluster nodes."""

import argparse
import sys

from commands import add_node_arguments, open_cluster, register_command, select_nodes
from common import format_command
from config import ConfigError, ExecutionContext
from remote.options import RunOptions


@register_command
class ExecCommand:
    """Run one command on each selected node in turn and print its output."""

    name = 'exec'
    description = 'Run a command as root on cluster nodes'
    needs_ssh_credentials = True

    def build_parser(self, parser: argparse.ArgumentParser) -> None:
        add_node_arguments(parser)
        parser.add_argument(
            'remote_command',
            metavar='COMMAND',
            nargs=argparse.REMAINDER,
            help='Command and arguments (use -- to separate from options)'
        )

    def run(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        words = [w for w in args.remote_command if w != '--']
        if not words:
            raise ConfigError("No command given")
        command = format_command(words[0], *words[1:])

        with open_cluster(args, context) as cluster:
            nodes = select_nodes(cluster, args.node, args.managers, args.workers)
            result = cluster.fleet_command(words[0], RunOptions.NONE, *words[1:], nodes=nodes)

        for name, response in result.responses.items():
            print(f"[{name}] exit code={response.exit_code}")
            if response.output:
                print(response.output.rstrip('\n'))

        if result.failed:
            print(f"*** ERROR: [{command}] failed on: {', '.join(result.failed)}", file=sys.stderr)
            return 1
        return 0
