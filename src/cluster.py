"""Cluster proxy: a cluster definition joined to live node handles.

ClusterProxy builds one NodeHandle per inventory entry and offers the
role-based queries, fleet-wide commands and configuration helpers the
commands are built from. Fleet operations over the managers run as
explicit sequential loops, since quorum operations like Vault unseal
must be applied to each instance in turn.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Protocol, runtime_checkable

from common import format_command, poll_until
from config import ClusterSecrets, ConfigError, ExecutionContext
from definition import NAME_PATTERN, ClusterDefinition, NodeDefinition
from remote.bundle import CommandBundle
from remote.errors import NodeTimeoutError, RemoteError
from remote.node import NodeHandle
from remote.options import CommandResponse, RunOptions
from remote.transport import SshTransport

logger = logging.getLogger(__name__)

# Node-local wrapper that talks to the Vault instance on the same node
VAULT_CLI = 'vault-direct'
VAULT_UNSEALED = 0
VAULT_SEALED = 2
VAULT_HA_MARKER = 'High-Availability Enabled: true'

SCRIPT_DIR = '/opt/swarm-driver/scripts'
PROXY_KEY_PREFIX = 'swarm/proxies'

NodeFactory = Callable[[NodeDefinition], NodeHandle]


def _require_name(kind: str, name: str) -> None:
    if not name or not NAME_PATTERN.match(name):
        raise ValueError(f"Invalid Vault {kind} name: {name!r}")


@dataclass
class FleetResult:
    """Per-node responses from a fleet-wide operation.

    success requires every member to have succeeded.
    """
    responses: dict[str, CommandResponse] = field(default_factory=dict)

    def add(self, node: NodeHandle, response: CommandResponse) -> None:
        self.responses[node.name] = response

    @property
    def failed(self) -> list[str]:
        return [name for name, response in self.responses.items() if not response.success]

    @property
    def success(self) -> bool:
        return bool(self.responses) and not self.failed

    def __bool__(self) -> bool:
        return self.success


@runtime_checkable
class ConfigStep(Protocol):
    """Protocol for cluster configuration steps."""

    def run(self, cluster: 'ClusterProxy') -> None:
        """Apply the step to the cluster."""


@dataclass
class UploadStep:
    """Upload a text file to one node."""
    node_name: str
    path: str
    text: str
    tab_stop: int = 0
    permissions: Optional[str] = None

    def run(self, cluster: 'ClusterProxy') -> None:
        node = cluster.get_node(self.node_name)
        node.upload_text(self.path, self.text, tab_stop=self.tab_stop, permissions=self.permissions)
        node.status = ''

    def __str__(self) -> str:
        return f'upload [{self.path}]'


@dataclass
class CommandStep:
    """Run a command (as root) on one node."""
    node_name: str
    command: str
    args: tuple = ()
    options: RunOptions = RunOptions.DEFAULTS

    def run(self, cluster: 'ClusterProxy') -> None:
        cluster.get_node(self.node_name).sudo(self.command, self.options, *self.args)

    def __str__(self) -> str:
        return format_command(self.command, *self.args)


@dataclass
class VolumeCreateStep:
    """Create a named Docker volume on one node."""
    node_name: str
    volume_name: str

    def run(self, cluster: 'ClusterProxy') -> None:
        node = cluster.get_node(self.node_name)
        node.sudo('docker volume create', RunOptions.DEFAULTS, self.volume_name)
        node.status = ''

    def __str__(self) -> str:
        return f'volume-create node={self.node_name} volume={self.volume_name}'


@dataclass
class VolumeRemoveStep:
    """Remove a named Docker volume from one node."""
    node_name: str
    volume_name: str

    def run(self, cluster: 'ClusterProxy') -> None:
        cluster.get_node(self.node_name).sudo('docker volume rm', RunOptions.DEFAULTS, self.volume_name)

    def __str__(self) -> str:
        return f'volume-remove node={self.node_name} volume={self.volume_name}'


@dataclass
class PauseStep:
    """Pause between configuration steps."""
    seconds: float

    def run(self, cluster: 'ClusterProxy') -> None:
        time.sleep(self.seconds)

    def __str__(self) -> str:
        return f'pause [{self.seconds}s]'


class ClusterProxy:
    """Typed view over a validated cluster definition and its node handles.

    Attributes:
        definition: The cluster definition
        secrets: Cluster secrets (Vault root token, unseal keys), when known
        nodes: All node handles, in definition order
    """

    def __init__(
        self,
        definition: ClusterDefinition,
        node_factory: NodeFactory,
        default_options: RunOptions = RunOptions.NONE,
        secrets: Optional[ClusterSecrets] = None,
    ):
        self.definition = definition
        self.secrets = secrets
        self.nodes: list[NodeHandle] = []
        for node_def in definition.nodes:
            node = node_factory(node_def)
            node.default_options |= default_options
            self.nodes.append(node)

        self._managers = sorted((n for n in self.nodes if n.metadata.is_manager), key=lambda n: n.name.lower())
        self._workers = sorted((n for n in self.nodes if n.metadata.is_worker), key=lambda n: n.name.lower())
        if not self._managers:
            raise ConfigError(f"Cluster '{definition.name}' has no manager nodes")

    @classmethod
    def from_context(
        cls,
        definition: ClusterDefinition,
        context: ExecutionContext,
        default_options: RunOptions = RunOptions.NONE,
    ) -> 'ClusterProxy':
        """Build a proxy whose nodes are reached over SSH."""
        def factory(node_def: NodeDefinition) -> NodeHandle:
            return NodeHandle(
                node_def.name,
                node_def.address,
                SshTransport(node_def.address, context.credentials),
                metadata=node_def,
                remote_path=definition.remote_path,
                log_dir=context.log_dir,
            )
        return cls(definition, factory, default_options=default_options, secrets=context.secrets)

    def __enter__(self) -> 'ClusterProxy':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        for node in self.nodes:
            try:
                node.close()
            except RemoteError as e:
                logger.debug(f"Error closing [{node.name}]: {e}")

    @property
    def managers(self) -> list[NodeHandle]:
        return list(self._managers)

    @property
    def workers(self) -> list[NodeHandle]:
        return list(self._workers)

    @property
    def manager(self) -> NodeHandle:
        """The primary (first) manager."""
        return self._managers[0]

    def get_node(self, name: str) -> NodeHandle:
        """Get a node by name (case-insensitive).

        Raises:
            KeyError: If the node is not part of the cluster
        """
        for node in self.nodes:
            if node.name.lower() == name.lower():
                return node
        raise KeyError(f"The node [{name}] is not present in the cluster.")

    # Fleet operations

    def fleet_command(
        self,
        command: str,
        options: RunOptions = RunOptions.DEFAULTS,
        *args,
        nodes: Optional[Iterable[NodeHandle]] = None,
    ) -> FleetResult:
        """Run a command as root on each node in turn (managers by default).

        A node that can't be reached is recorded as failed; the others
        still run.
        """
        command_line = format_command(command, *args)
        result = FleetResult()
        for node in (self.managers if nodes is None else list(nodes)):
            try:
                response = node.sudo(command, options, *args)
            except RemoteError as e:
                logger.warning(f"[{node.name}] {command_line}: {e}")
                response = CommandResponse(command_line, 1, error_text=str(e))
            result.add(node, response)
        return result

    def wait_for_vault(self, node: NodeHandle, timeout: int = 300, interval: int = 5) -> bool:
        """Wait for the node's Vault instance to report sealed with HA enabled.

        The node is faulted if it isn't ready in time.
        """
        if node.is_faulted:
            return False
        node.status = 'vault: waiting'

        def ready() -> bool:
            response = node.sudo(f'{VAULT_CLI} status', RunOptions.LOG_OUTPUT)
            return response.exit_code == VAULT_SEALED and VAULT_HA_MARKER in response.output_text

        try:
            poll_until(ready, timeout=timeout, interval=interval, description=f'[{node.name}] vault')
        except NodeTimeoutError:
            node.fault(f"[vault] did not become ready after [{timeout}s]")
            return False
        return True

    def unseal_vault(
        self,
        keys: list[str],
        threshold: int,
        nodes: Optional[Iterable[NodeHandle]] = None,
    ) -> FleetResult:
        """Unseal Vault on each manager, one at a time.

        A sealed instance first has earlier unseal attempts reset and then
        receives threshold keys; it only counts as unsealed once status
        says so. An instance that is already unsealed counts as a success.
        A manager whose unseal fails is faulted.
        """
        if threshold < 1 or threshold > len(keys):
            raise ConfigError(f"Need {threshold} unseal key(s), have {len(keys)}")

        result = FleetResult()
        for node in (self.managers if nodes is None else list(nodes)):
            try:
                response = self._unseal_node(node, keys[:threshold])
            except RemoteError as e:
                response = CommandResponse(f'{VAULT_CLI} unseal', 1, error_text=str(e))
            if not response.success:
                node.fault(f"[vault] unseal failed: {response.error_text.strip() or f'exit code={response.exit_code}'}")
            result.add(node, response)
        return result

    def _unseal_node(self, node: NodeHandle, keys: list[str]) -> CommandResponse:
        status = node.sudo(f'{VAULT_CLI} status', RunOptions.NONE)
        if status.exit_code == VAULT_UNSEALED:
            node.log.info(f"[{node.name}] vault is already unsealed")
            return status
        if status.exit_code != VAULT_SEALED:
            return status

        node.status = 'vault: unseal'
        reset = node.sudo(f'{VAULT_CLI} unseal -reset', RunOptions.NONE)
        if not reset.success:
            return reset
        for key in keys:
            response = node.sudo(f'{VAULT_CLI} unseal', RunOptions.CLASSIFIED, key)
            if not response.success:
                return response

        status = node.sudo(f'{VAULT_CLI} status', RunOptions.NONE)
        if status.exit_code != VAULT_UNSEALED:
            return CommandResponse(
                f'{VAULT_CLI} status',
                status.exit_code or 1,
                error_text=f'still sealed after {len(keys)} key(s)',
            )
        node.log.info(f"[{node.name}] vault unsealed")
        node.status = 'vault: unsealed'
        return CommandResponse(f'{VAULT_CLI} unseal', 0)

    def vault_command(self, command: str, *args) -> CommandResponse:
        """Run a vault command on the primary manager with the root token.

        Raises:
            ConfigError: If the root token isn't known yet.
        """
        bundle = self._vault_bundle('vault-command.sh', format_command(command, *args))
        return self.manager.sudo(bundle, RunOptions.CLASSIFIED)

    def _vault_bundle(self, script_name: str, command_line: str) -> CommandBundle:
        if not self.secrets or not self.secrets.vault_root_token:
            raise ConfigError("Cluster secrets don't include the Vault root token yet")
        bundle = CommandBundle(f'./{script_name}')
        bundle.add_file(
            script_name,
            '#!/bin/bash\n'
            f'export VAULT_TOKEN={self.secrets.vault_root_token}\n'
            f'{command_line}\n',
            executable=True,
        )
        return bundle

    def create_vault_policy(self, name: str, policy: str) -> CommandResponse:
        """Create (or replace) a Vault access control policy from its HCL text.

        Raises:
            ValueError: If name is not a valid policy name.
            ConfigError: If the root token isn't known yet.
        """
        _require_name('policy', name)
        bundle = self._vault_bundle('create-vault-policy.sh', f'vault policy write {name} policy.hcl')
        bundle.add_file('policy.hcl', policy)
        return self.manager.sudo(bundle, RunOptions.DEFAULTS | RunOptions.CLASSIFIED)

    def remove_vault_policy(self, name: str) -> CommandResponse:
        _require_name('policy', name)
        return self.vault_command('vault policy delete', name)

    def create_vault_app_role(self, name: str, *policies: str) -> CommandResponse:
        """Create (or update) an AppRole bound to the given policy names."""
        _require_name('role', name)
        if not policies or any(not p for p in policies):
            raise ValueError(f"AppRole '{name}' needs at least one non-empty policy")
        return self.vault_command(f'vault write auth/approle/role/{name}', f"policies={','.join(policies)}")

    def remove_vault_app_role(self, name: str) -> CommandResponse:
        _require_name('role', name)
        return self.vault_command(f'vault delete auth/approle/role/{name}')

    # Configuration

    def configure(self, steps: Iterable[ConfigStep]) -> None:
        """Run configuration steps in order."""
        for step in steps:
            logger.debug(f"Configure: {step}")
            step.run(self)

    def get_file_upload_steps(
        self,
        nodes: Iterable[NodeHandle],
        path: str,
        text: str,
        tab_stop: int = 0,
        permissions: Optional[str] = None,
    ) -> list[UploadStep]:
        return [UploadStep(node.name, path, text, tab_stop, permissions) for node in nodes]

    def deploy(self, script_name: str, script: str, *args) -> FleetResult:
        """Upload a rendered script to every manager, then run it on each."""
        path = f'{SCRIPT_DIR}/{script_name}'
        self.configure(self.get_file_upload_steps(self.managers, path, script, permissions='700'))
        return self.fleet_command(path, RunOptions.DEFAULTS, *args)

    def put_proxy_settings(self, proxy: str, settings: dict) -> CommandResponse:
        """Store a proxy's settings in Consul as an opaque JSON document."""
        key = f'{PROXY_KEY_PREFIX}/{proxy}/settings'
        bundle = CommandBundle('consul kv put', key, '@settings.json')
        bundle.add_file('settings.json', json.dumps(settings, indent=2, sort_keys=True))
        return self.manager.run(bundle, RunOptions.DEFAULTS)
