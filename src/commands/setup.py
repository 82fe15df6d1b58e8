"""setup: provision a new swarm cluster on pristine nodes."""

import argparse
import logging
import sys

from commands import open_cluster, register_command
from config import ClusterSecrets, ConfigError, ExecutionContext, get_secrets_path
from provisioning import (
    ClusterSetup,
    check_manager,
    check_worker,
    prepare_node,
    verify_os,
    verify_pristine,
)
from remote.options import RunOptions
from reporting import SetupReport
from setup_opr import SetupController

logger = logging.getLogger(__name__)


def build_setup_controller(
    setup: ClusterSetup,
    context: ExecutionContext,
    strong_password: bool = True,
) -> SetupController:
    """Register the cluster setup steps in order."""
    cluster = setup.cluster
    definition = cluster.definition
    primary = cluster.manager

    controller = SetupController.from_context(f'setup {definition.name}', cluster.nodes, context)
    controller.add_wait_until_online_step()
    controller.add_step('verify OS', verify_os)
    controller.add_step('verify pristine', verify_pristine)
    controller.add_step('preparing', lambda node: prepare_node(node, definition))
    controller.add_step('manager config', setup.configure_manager, predicate=lambda node: node.metadata.is_manager)
    controller.add_step('swarm create', setup.create_swarm, predicate=lambda node: node is primary)
    controller.add_step('worker config', setup.configure_worker, predicate=lambda node: node.metadata.is_worker)
    controller.add_step('swarm join', setup.join_swarm, predicate=lambda node: node is not primary)
    if definition.networks:
        controller.add_step('networks', setup.create_networks, predicate=lambda node: node is primary)
    controller.add_step('node labels', setup.label_nodes, predicate=lambda node: node is primary)
    if definition.docker.images:
        controller.add_step('pull images', setup.pull_images)
    controller.add_global_step('vault initialize', setup.initialize_vault)
    if context.wait_seconds > 0:
        controller.add_delay_step(f'cluster stabilize ({context.wait_seconds}s)', context.wait_seconds)
    controller.add_step('check managers', check_manager, predicate=lambda node: node.metadata.is_manager)
    controller.add_step('check workers', check_worker, predicate=lambda node: node.metadata.is_worker)
    if strong_password:
        controller.add_step('strong password', setup.set_strong_password)
    controller.add_step('mark complete', setup.mark_complete)
    controller.add_global_step('save secrets', setup.secrets.save, quiet=True)
    return controller


@register_command
class SetupCommand:
    """Provision Consul, Vault and Docker Swarm on every node of a new cluster."""

    name = 'setup'
    description = 'Provision a new swarm cluster on pristine nodes'
    needs_ssh_credentials = True

    def build_parser(self, parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            '--wait-seconds',
            type=int,
            help='Seconds to let the cluster stabilize before the health checks'
        )
        parser.add_argument(
            '--keep-password',
            action='store_true',
            help="Don't replace the login user's password with a generated one"
        )
        parser.add_argument(
            '--force',
            action='store_true',
            help='Overwrite secrets saved by an earlier setup of this cluster'
        )

    def run(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        if args.wait_seconds is not None:
            context.wait_seconds = args.wait_seconds

        with open_cluster(args, context, RunOptions.FAULT_ON_ERROR) as cluster:
            name = cluster.definition.name
            secrets_path = get_secrets_path(name)
            if secrets_path.exists() and not args.force:
                raise ConfigError(
                    f"Cluster '{name}' already has saved secrets at {secrets_path}. "
                    "Use --force to set it up again.")

            secrets = ClusterSecrets(cluster_name=name, root_user=context.credentials.user or 'sysadmin')
            setup = ClusterSetup(cluster, secrets)
            controller = build_setup_controller(setup, context, strong_password=not args.keep_password)
            success = controller.run()

        if context.report_dir:
            report = SetupReport(context.report_dir)
            for path in report.write(controller.result):
                logger.info(f"Report written: {path}")

        if not success:
            print("*** ERROR: One or more configuration steps failed.", file=sys.stderr)
            return 1
        logger.info(f"Cluster '{name}' is ready. Secrets: {secrets_path}")
        return 0
