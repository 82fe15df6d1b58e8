"""health: check Docker, Consul and Vault on every node."""

import argparse
import sys

from commands import add_node_arguments, open_cluster, register_command, select_nodes
from config import ExecutionContext
from provisioning import check_manager, check_worker
from setup_opr import SetupController


@register_command
class HealthCommand:
    name = 'health'
    description = 'Check the Docker, Consul and Vault services on cluster nodes'
    needs_ssh_credentials = True

    def build_parser(self, parser: argparse.ArgumentParser) -> None:
        add_node_arguments(parser)

    def run(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        with open_cluster(args, context) as cluster:
            nodes = select_nodes(cluster, args.node, args.managers, args.workers)
            controller = SetupController.from_context('health', nodes, context)
            controller.add_wait_until_online_step()
            controller.add_step('check managers', check_manager, predicate=lambda node: node.metadata.is_manager)
            controller.add_step('check workers', check_worker, predicate=lambda node: node.metadata.is_worker)
            success = controller.run()

        print(controller.result.format_table())
        if not success:
            unhealthy = [outcome.name for outcome in controller.result.faulted_nodes]
            print(f"*** ERROR: Unhealthy node(s): {', '.join(unhealthy)}", file=sys.stderr)
            return 1
        return 0
