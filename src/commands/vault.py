"""vault: unseal the cluster's Vault instances or report their seal status.

Usage:
    swarm-driver --cluster prod.yaml vault status
    swarm-driver --cluster prod.yaml vault unseal
"""

import argparse
import sys

from cluster import VAULT_CLI, VAULT_SEALED, VAULT_UNSEALED
from commands import open_cluster, register_command
from config import ConfigError, ExecutionContext
from remote.options import RunOptions

SEAL_STATES = {
    VAULT_UNSEALED: 'unsealed',
    VAULT_SEALED: 'sealed',
}


@register_command
class VaultCommand:
    name = 'vault'
    description = 'Vault utilities (unseal/status)'
    needs_ssh_credentials = True

    def build_parser(self, parser: argparse.ArgumentParser) -> None:
        sub = parser.add_subparsers(dest='action')
        sub.add_parser('status', help='Show the seal status of each manager')
        sub.add_parser('unseal', help='Unseal Vault on each manager with the saved keys')

    def run(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        if args.action == 'status':
            return self.status(args, context)
        if args.action == 'unseal':
            return self.unseal(args, context)
        raise ConfigError("Expected a vault action: status or unseal")

    def status(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        with open_cluster(args, context) as cluster:
            result = cluster.fleet_command(f'{VAULT_CLI} status', RunOptions.NONE)

        for name, response in result.responses.items():
            state = SEAL_STATES.get(response.exit_code, f'error (exit code={response.exit_code})')
            print(f"{name}: {state}")

        not_unsealed = [name for name, r in result.responses.items() if r.exit_code != VAULT_UNSEALED]
        if not_unsealed:
            print(f"*** ERROR: Vault is not unsealed on: {', '.join(not_unsealed)}", file=sys.stderr)
            return 1
        return 0

    def unseal(self, args: argparse.Namespace, context: ExecutionContext) -> int:
        with open_cluster(args, context) as cluster:
            secrets = context.secrets
            if secrets is None or not secrets.vault_unseal_keys:
                raise ConfigError(f"No saved Vault unseal keys for cluster '{cluster.definition.name}'")
            result = cluster.unseal_vault(secrets.vault_unseal_keys, secrets.vault_key_threshold)

        if not result.success:
            print(f"*** ERROR: Vault unseal failed on: {', '.join(result.failed)}", file=sys.stderr)
            return 1
        print(f"Vault unsealed on {len(result.responses)} manager(s).")
        return 0
