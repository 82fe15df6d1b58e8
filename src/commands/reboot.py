"""reboot: restart cluster nodes and wait for them to come back."""

import argparse
import sys

from commands import add_node_arguments, open_cluster, register_command, select_nodes
from config import ExecutionContext
from setup_opr import SetupController


@register_command
class RebootCommand:
    name = 'reboot'
    description = 'Reboot cluster nodes and wait for them to come back online'
    needs_ssh_credentials = True

    def build_parser(self, parser: argparse.ArgumentParser) -> None:
        add_node_arguments(parser)
        parser.add_argument(
            '--no-wait',
            action='store_true',
            help="Don't wait for the nodes to come back online"
        )
        parser.add_argument(
            '--one-at-a-time',
            action='store_true',
            help='Reboot nodes one after another instead of in parallel'
        )

    def run(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        with open_cluster(args, context) as cluster:
            nodes = select_nodes(cluster, args.node, args.managers, args.workers)
            controller = SetupController.from_context('reboot', nodes, context)
            controller.add_wait_until_online_step()
            controller.add_step(
                'reboot nodes',
                lambda node: node.reboot(
                    wait=not args.no_wait,
                    timeout=context.online_timeout,
                    interval=context.online_interval,
                ),
                max_parallel=1 if args.one_at_a_time else None,
            )
            success = controller.run()

        if not success:
            print("*** ERROR: One or more nodes could not be rebooted.", file=sys.stderr)
            return 1
        return 0
