"""shell: pass commands through an interactive shell on one node.

Commands come from the command line, or one per line from stdin. Each
command's output is streamed back until an end marker echoed after it.
"""

import argparse
import sys
from typing import Iterable

from commands import open_cluster, register_command
from config import ConfigError, ExecutionContext
from remote.transport import InteractiveShell

END_MARKER = '__swarm_driver_end__'


def pass_through(shell: InteractiveShell, commands: Iterable[str], out=None) -> int:
    """Send each command and copy its output to out. Returns the number of commands sent."""
    out = out or sys.stdout
    count = 0
    for command in commands:
        command = command.rstrip('\n')
        if not command.strip():
            continue
        shell.send(command)
        shell.send(f'echo {END_MARKER}')
        for line in shell.read_until(END_MARKER):
            print(line, file=out)
        count += 1
    return count


@register_command
class ShellCommand:
    name = 'shell'
    description = 'Run commands through an interactive shell on a node'
    needs_ssh_credentials = True

    def build_parser(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            '--node', '-n',
            required=True,
            metavar='NAME',
            help='Target node'
        )
        parser.add_argument(
            '--sudo',
            action='store_true',
            help='Open a root shell'
        )
        parser.add_argument(
            'remote_command',
            metavar='COMMAND',
            nargs=argparse.REMAINDER,
            help='Command to run (default: read commands from stdin)'
        )

    def run(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        words = [w for w in args.remote_command if w != '--']
        commands: Iterable[str] = [' '.join(words)] if words else sys.stdin

        with open_cluster(args, context) as cluster:
            node = cluster.get_node(args.node)
            node.connect()
            with node.open_shell(sudo=args.sudo) as shell:
                count = pass_through(shell, commands)

        if count == 0:
            raise ConfigError("No commands given")
        return 0
