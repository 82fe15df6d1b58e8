"""upload: copy a local file to a path on cluster nodes."""

import argparse
import sys
from pathlib import Path

from commands import add_node_arguments, open_cluster, register_command, select_nodes
from config import ConfigError, ExecutionContext
from setup_opr import SetupController


@register_command
class UploadCommand:
    name = 'upload'
    description = 'Upload a local file to cluster nodes (owned by root)'
    needs_ssh_credentials = True

    def build_parser(self, parser: argparse.ArgumentParser) -> None:
        add_node_arguments(parser)
        parser.add_argument('source', type=Path, help='Local file')
        parser.add_argument('target', help='Absolute path on the nodes')
        parser.add_argument(
            '--permissions', '-p',
            help='chmod mode for the uploaded file (e.g., 644)'
        )

    def run(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        if not args.source.is_file():
            raise ConfigError(f"File not found: {args.source}")
        if not args.target.startswith('/'):
            raise ConfigError(f"Target path must be absolute: {args.target}")
        data = args.source.read_bytes()

        with open_cluster(args, context) as cluster:
            nodes = select_nodes(cluster, args.node, args.managers, args.workers)
            controller = SetupController.from_context('upload', nodes, context)
            controller.add_wait_until_online_step()
            controller.add_step('upload', lambda node: node.upload(args.target, data, permissions=args.permissions))
            success = controller.run()

        if not success:
            print(f"*** ERROR: Upload of [{args.target}] failed on one or more nodes.", file=sys.stderr)
            return 1
        return 0
