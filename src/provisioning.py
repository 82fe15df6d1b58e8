"""Provisioning step implementations.

Node steps take a NodeHandle and report problems by faulting the node
(commands run with the cluster's FAULT_ON_ERROR default). Global steps
raise, which aborts the run.

Stateless checks are module functions; steps that share state across
nodes (swarm join tokens, Vault credentials) live on ClusterSetup.
"""

import logging
import re
import secrets as token_source
from typing import Optional

from cluster import VAULT_CLI, ClusterProxy
from common import poll_until
from config import ClusterSecrets
from definition import ClusterDefinition
from remote.bundle import CommandBundle
from remote.errors import CommandError, NodeTimeoutError, RemoteError
from remote.node import NodeHandle
from remote.options import RunOptions

logger = logging.getLogger(__name__)

SUPPORTED_RELEASES = ('20.04', '22.04', '24.04')
SWARM_PORT = 2377
SETUP_MARKER = '/etc/swarm-driver/setup-complete'
NODE_ENV_PATH = '/etc/swarm-driver/node.env'
VAULT_CLI_PATH = f'/usr/local/bin/{VAULT_CLI}'

CONSUL_JOIN_TIMEOUT = 120
CONSUL_JOIN_INTERVAL = 5
VAULT_READY_TIMEOUT = 300
VAULT_READY_INTERVAL = 5

UNSEAL_KEY_PATTERN = re.compile(r'^Unseal Key \d+:\s*(\S+)', re.MULTILINE)
ROOT_TOKEN_PATTERN = re.compile(r'^Initial Root Token:\s*(\S+)', re.MULTILINE)

VERIFY_PRISTINE_SCRIPT = f"""#!/bin/bash
if [ -f {SETUP_MARKER} ]; then
    echo "Node has already been set up ({SETUP_MARKER} exists)." >&2
    exit 1
fi
if command -v docker >/dev/null 2>&1; then
    echo "Docker is already installed." >&2
    exit 1
fi
"""

VAULT_CLI_SCRIPT = """#!/bin/bash
# Talk to the Vault instance on this node
export VAULT_ADDR=http://127.0.0.1:8200
case "$1" in
    init|unseal|seal) exec vault operator "$@" ;;
    *) exec vault "$@" ;;
esac
"""

PREPARE_SCRIPT = """#!/bin/bash
set -euo pipefail
export DEBIAN_FRONTEND=noninteractive
apt-get update -yq
apt-get install -yq curl unzip jq ntp
rm -f /var/lib/dhcp/*
"""

CONSUL_SCRIPT = """#!/bin/bash
# usage: setup-consul.sh server|agent <version> <datacenter> <address> <encrypt-key|->
set -euo pipefail
mode=$1 version=$2 datacenter=$3 address=$4 encrypt=$5
if ! command -v consul >/dev/null 2>&1; then
    curl -fsSL -o /tmp/consul.zip https://releases.hashicorp.com/consul/${version}/consul_${version}_linux_amd64.zip
    unzip -o /tmp/consul.zip -d /usr/local/bin && rm -f /tmp/consul.zip
fi
mkdir -p /etc/consul.d /var/lib/consul
chmod 770 /etc/consul.d
server=false
[ "$mode" = server ] && server=true
cat > /etc/consul.d/consul.json <<EOF
{
  "datacenter": "${datacenter}",
  "data_dir": "/var/lib/consul",
  "bind_addr": "${address}",
  "client_addr": "127.0.0.1",
  "server": ${server}
}
EOF
if [ "$encrypt" != "-" ]; then
    echo "{\\"encrypt\\": \\"${encrypt}\\"}" > /etc/consul.d/encrypt.json
fi
cat > /etc/systemd/system/consul.service <<EOF
[Unit]
Description=Consul
After=network-online.target

[Service]
ExecStart=/usr/local/bin/consul agent -config-dir=/etc/consul.d
Restart=always

[Install]
WantedBy=multi-user.target
EOF
systemctl daemon-reload
systemctl enable --now consul
"""

VAULT_SERVER_SCRIPT = """#!/bin/bash
# usage: setup-vault.sh <version> <address>
set -euo pipefail
version=$1 address=$2
if ! command -v vault >/dev/null 2>&1; then
    curl -fsSL -o /tmp/vault.zip https://releases.hashicorp.com/vault/${version}/vault_${version}_linux_amd64.zip
    unzip -o /tmp/vault.zip -d /usr/local/bin && rm -f /tmp/vault.zip
fi
mkdir -p /etc/vault
cat > /etc/vault/vault.hcl <<EOF
storage "consul" {
  address = "127.0.0.1:8500"
  path    = "vault/"
}
listener "tcp" {
  address     = "0.0.0.0:8200"
  tls_disable = 1
}
api_addr = "http://${address}:8200"
EOF
chmod 600 /etc/vault/*
cat > /etc/systemd/system/vault.service <<EOF
[Unit]
Description=Vault
After=consul.service

[Service]
ExecStart=/usr/local/bin/vault server -config=/etc/vault/vault.hcl
Restart=always

[Install]
WantedBy=multi-user.target
EOF
systemctl daemon-reload
systemctl enable --now vault
"""

DOCKER_SCRIPT = """#!/bin/bash
# usage: setup-docker.sh <version|latest>
set -euo pipefail
if ! command -v docker >/dev/null 2>&1; then
    if [ "$1" = latest ]; then
        curl -fsSL https://get.docker.com | sh
    else
        curl -fsSL https://get.docker.com | VERSION="$1" sh
    fi
fi
systemctl enable --now docker
apt-get clean -yq
"""


def verify_os(node: NodeHandle) -> None:
    """Fault the node unless it runs a supported Ubuntu release."""
    node.status = 'verify: OS'
    response = node.sudo('lsb_release -a', RunOptions.DEFAULTS)
    if not response.success:
        return
    output = response.output_text
    if 'Ubuntu' not in output or not any(release in output for release in SUPPORTED_RELEASES):
        node.fault(f"Expected Ubuntu {' or '.join(SUPPORTED_RELEASES)}.")


def verify_pristine(node: NodeHandle) -> None:
    """Fault the node if it has already been set up."""
    node.status = 'verify: pristine'
    bundle = CommandBundle('./verify-pristine.sh')
    bundle.add_file('verify-pristine.sh', VERIFY_PRISTINE_SCRIPT, executable=True)
    node.sudo(bundle, RunOptions.DEFAULTS | RunOptions.FAULT_ON_ERROR)


def configure_environment(node: NodeHandle, definition: ClusterDefinition) -> None:
    """Upload the node's environment file describing its place in the cluster."""
    node.status = 'environment'
    managers = ' '.join(n.address for n in definition.sorted_managers)
    lines = [
        f'SWARM_CLUSTER={definition.name}',
        f'SWARM_DATACENTER={definition.datacenter}',
        f'SWARM_NODE_NAME={node.name}',
        f'SWARM_NODE_ADDRESS={node.address}',
        f'SWARM_NODE_ROLE={node.metadata.role}',
        f'SWARM_MANAGERS="{managers}"',
    ]
    node.upload_text(NODE_ENV_PATH, '\n'.join(lines) + '\n', permissions='644')


def prepare_node(node: NodeHandle, definition: ClusterDefinition) -> None:
    """Install base packages and the node-local helpers."""
    node.status = 'preparing'
    bundle = CommandBundle('./prepare.sh')
    bundle.add_file('prepare.sh', PREPARE_SCRIPT, executable=True)
    node.sudo(bundle, RunOptions.DEFAULTS)
    if node.is_faulted:
        return
    node.upload_text(VAULT_CLI_PATH, VAULT_CLI_SCRIPT, permissions='755')
    configure_environment(node, definition)


def check_docker(node: NodeHandle) -> None:
    response = node.sudo('docker info', RunOptions.LOG_ON_ERROR_ONLY)
    if not response.success:
        node.fault(f"Docker: {response.output}")


def check_consul(node: NodeHandle) -> None:
    response = node.sudo('systemctl is-active consul', RunOptions.LOG_ON_ERROR_ONLY)
    if not response.success:
        node.fault("Consul daemon is not running.")


def check_vault(node: NodeHandle) -> None:
    response = node.sudo(f'{VAULT_CLI} status', RunOptions.LOG_ON_ERROR_ONLY)
    if response.exit_code != 0:
        node.fault(f"Vault is not unsealed (status exit code={response.exit_code}).")


def check_manager(node: NodeHandle) -> None:
    """Verify Docker, Consul and Vault on a manager."""
    node.status = 'check: manager'
    for check in (check_docker, check_consul, check_vault):
        if node.is_faulted:
            return
        check(node)
    if not node.is_faulted:
        node.status = 'ready'


def check_worker(node: NodeHandle) -> None:
    """Verify Docker and the Consul agent on a worker."""
    node.status = 'check: worker'
    for check in (check_docker, check_consul):
        if node.is_faulted:
            return
        check(node)
    if not node.is_faulted:
        node.status = 'ready'


def parse_vault_init(output: str) -> tuple[list[str], str]:
    """Extract (unseal_keys, root_token) from vault init output.

    Raises:
        ValueError: If either is missing.
    """
    keys = UNSEAL_KEY_PATTERN.findall(output)
    token = ROOT_TOKEN_PATTERN.search(output)
    if not keys or not token:
        raise ValueError("Unable to parse vault init output")
    return keys, token.group(1)


class ClusterSetup:
    """Setup steps that share state across nodes.

    Attributes:
        cluster: The cluster being set up
        secrets: Secrets collected during setup (root password, Vault keys)
        join_timeout: Seconds allowed for a Consul join to succeed
        join_interval: Seconds between Consul join attempts
    """

    def __init__(
        self,
        cluster: ClusterProxy,
        secrets: Optional[ClusterSecrets] = None,
        join_timeout: float = CONSUL_JOIN_TIMEOUT,
        join_interval: float = CONSUL_JOIN_INTERVAL,
        vault_timeout: int = VAULT_READY_TIMEOUT,
        vault_interval: int = VAULT_READY_INTERVAL,
    ):
        self.cluster = cluster
        self.definition = cluster.definition
        self.secrets = secrets or ClusterSecrets(cluster_name=cluster.definition.name)
        self.join_timeout = join_timeout
        self.join_interval = join_interval
        self.vault_timeout = vault_timeout
        self.vault_interval = vault_interval
        self.swarm_worker_token: Optional[str] = None
        self.swarm_manager_token: Optional[str] = None
        if not self.secrets.root_password:
            self.secrets.root_password = token_source.token_urlsafe(24)

    # Consul

    def join_consul(self, node: NodeHandle) -> bool:
        """Retry `consul join` against the managers until it succeeds or the deadline passes.

        The node is faulted on timeout.
        """
        addresses = ' '.join(m.address for m in self.cluster.managers)
        node.status = 'consul: join'
        try:
            attempts = poll_until(
                lambda: node.sudo(f'consul join {addresses}', RunOptions.NONE).exit_code == 0,
                timeout=self.join_timeout,
                interval=self.join_interval,
                description=f'[{node.name}] consul join',
            )
        except NodeTimeoutError:
            node.fault(f"Unable to join the Consul cluster within [{self.join_timeout}s].")
            return False
        node.log.info(f"[{node.name}] Joined Consul after {attempts} attempt(s)")
        return True

    def _setup_consul(self, node: NodeHandle, mode: str) -> None:
        bundle = CommandBundle(
            './setup-consul.sh', mode, self.definition.consul.version, self.definition.datacenter,
            node.address, self.definition.consul.encryption_key or '')
        bundle.add_file('setup-consul.sh', CONSUL_SCRIPT, executable=True)
        node.sudo(bundle, RunOptions.DEFAULTS | RunOptions.CLASSIFIED)

    def _setup_docker(self, node: NodeHandle) -> None:
        docker = self.definition.docker
        bundle = CommandBundle('./setup-docker.sh', docker.version)
        bundle.add_file('setup-docker.sh', DOCKER_SCRIPT, executable=True)
        node.sudo(bundle, RunOptions.DEFAULTS)
        if docker.registry_username and not node.is_faulted:
            node.sudo('docker login', RunOptions.DEFAULTS | RunOptions.CLASSIFIED,
                      '-u', docker.registry_username, '-p', docker.registry_password, docker.registry)

    def configure_manager(self, node: NodeHandle) -> None:
        """Consul server, quorum join, Vault server and Docker."""
        node.status = 'manager config'
        self._setup_consul(node, 'server')
        if node.is_faulted or not self.join_consul(node):
            return
        node.status = 'vault: install'
        bundle = CommandBundle('./setup-vault.sh', self.definition.vault.version, node.address)
        bundle.add_file('setup-vault.sh', VAULT_SERVER_SCRIPT, executable=True)
        node.sudo(bundle, RunOptions.DEFAULTS)
        if not node.is_faulted:
            self._setup_docker(node)

    def configure_worker(self, node: NodeHandle) -> None:
        """Consul agent, join and Docker."""
        node.status = 'worker config'
        self._setup_consul(node, 'agent')
        if node.is_faulted or not self.join_consul(node):
            return
        self._setup_docker(node)

    # Swarm

    def create_swarm(self, manager: NodeHandle) -> None:
        """Initialize the swarm on the primary manager and collect the join tokens."""
        manager.status = 'swarm: create'
        response = manager.sudo('docker swarm init --advertise-addr', RunOptions.DEFAULTS,
                                f'{manager.address}:{SWARM_PORT}')
        if not response.success:
            return
        tokens = {}
        for role in ('worker', 'manager'):
            response = manager.sudo('docker swarm join-token -q', RunOptions.DEFAULTS | RunOptions.CLASSIFIED, role)
            tokens[role] = response.output_text.strip()
            if not response.success or not tokens[role]:
                manager.fault(f"Unable to obtain the swarm {role} join token.")
                return
        self.swarm_worker_token = tokens['worker']
        self.swarm_manager_token = tokens['manager']
        manager.status = 'swarm: created'

    def join_swarm(self, node: NodeHandle) -> None:
        node.status = 'swarm: join'
        token = self.swarm_manager_token if node.metadata.is_manager else self.swarm_worker_token
        if not token:
            node.fault("No swarm join token is available.")
            return
        node.sudo('docker swarm join --token', RunOptions.DEFAULTS | RunOptions.CLASSIFIED,
                  token, f'{self.cluster.manager.address}:{SWARM_PORT}')
        if not node.is_faulted:
            node.status = 'swarm: joined'

    def create_networks(self, manager: NodeHandle) -> None:
        for network in self.definition.networks:
            manager.status = f'network: {network}'
            manager.sudo('docker network create', RunOptions.DEFAULTS,
                         '--driver', 'overlay', '--opt', 'encrypted', '--attachable', network)

    def label_nodes(self, manager: NodeHandle) -> None:
        """Add the datacenter, role and custom labels to every swarm node (run on the primary manager)."""
        for node in self.cluster.nodes:
            if node.is_faulted:
                continue
            labels = {
                'swarm.datacenter': self.definition.datacenter,
                'swarm.role': node.metadata.role,
            }
            labels.update(node.metadata.labels)
            manager.status = f'labeling: {node.name}'
            for key, value in labels.items():
                manager.sudo('docker node update --label-add', RunOptions.DEFAULTS, f'{key}={value}', node.name)

    def pull_images(self, node: NodeHandle) -> None:
        for image in self.definition.docker.images:
            node.sudo('docker pull', RunOptions.DEFAULTS, image)

    # Vault

    def initialize_vault(self) -> None:
        """Initialize Vault on the primary manager, then unseal every manager.

        Runs as a global step: any failure raises.
        """
        primary = self.cluster.manager
        vault = self.definition.vault
        primary.status = 'vault: init'
        response = primary.sudo(
            f'{VAULT_CLI} init', RunOptions.LOG_ON_ERROR_ONLY | RunOptions.CLASSIFIED,
            f'-key-shares={vault.key_count}', f'-key-threshold={vault.key_threshold}')
        if not response.success:
            primary.fault(f"[vault init] exit code={response.exit_code}")
            raise CommandError(f'{VAULT_CLI} init', response.exit_code)

        keys, root_token = parse_vault_init(response.output_text)
        self.secrets.vault_unseal_keys = keys
        self.secrets.vault_root_token = root_token
        self.secrets.vault_key_threshold = vault.key_threshold
        self.cluster.secrets = self.secrets
        path = self.secrets.save()
        logger.info(f"Vault initialized with {len(keys)} unseal key(s); secrets saved to {path}")

        for manager in self.cluster.managers:
            if not self.cluster.wait_for_vault(manager, self.vault_timeout, self.vault_interval):
                raise NodeTimeoutError(f"[{manager.name}] Vault did not become ready after [{self.vault_timeout}s]")

        result = self.cluster.unseal_vault(keys, vault.key_threshold)
        if not result.success:
            raise RemoteError(f"Vault unseal failed on: {', '.join(result.failed)}")

    # Hardening

    def set_strong_password(self, node: NodeHandle) -> None:
        """Replace the login user's password with a generated one shared by all nodes."""
        user = self.secrets.root_user
        node.status = 'strong password'
        bundle = CommandBundle('./set-strong-password.sh')
        bundle.add_file(
            'set-strong-password.sh',
            f"#!/bin/bash\necho '{user}:{self.secrets.root_password}' | chpasswd\n",
            executable=True)
        node.sudo(bundle, RunOptions.DEFAULTS | RunOptions.CLASSIFIED | RunOptions.FAULT_ON_ERROR)

    def mark_complete(self, node: NodeHandle) -> None:
        node.sudo('mkdir -p /etc/swarm-driver && touch', RunOptions.DEFAULTS, SETUP_MARKER)
        if not node.is_faulted:
            node.status = 'ready'
