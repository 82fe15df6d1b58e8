"""Tests for provisioning.py - node verification, service setup, swarm and Vault steps."""

import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import get_secrets_path
from conftest import seal_vault
from definition import ClusterDefinition
from provisioning import (
    NODE_ENV_PATH,
    SETUP_MARKER,
    VAULT_CLI_PATH,
    ClusterSetup,
    check_manager,
    check_worker,
    parse_vault_init,
    prepare_node,
    verify_os,
    verify_pristine,
)
from remote.errors import CommandError, NodeTimeoutError, RemoteError
from remote.options import RunOptions

VAULT_INIT_OUTPUT = """Unseal Key 1: key-one
Unseal Key 2: key-two
Unseal Key 3: key-three

Initial Root Token: s.root-token

Vault initialized with 3 key shares and a key threshold of 2.
"""


def _uploaded(transport, content: bytes) -> bool:
    return any(content in data for data in transport.files.values())


@pytest.fixture
def strict_cluster(cluster_definition, build_cluster):
    """Cluster whose commands fault nodes on error, the way setup runs."""
    proxy, transports = build_cluster(cluster_definition, default_options=RunOptions.FAULT_ON_ERROR)
    proxy.transports = transports
    return proxy


class TestVerify:
    """Test OS and pristine-state verification."""

    def test_supported_ubuntu(self, strict_cluster):
        node = strict_cluster.get_node('worker-0')
        strict_cluster.transports['worker-0'].respond(
            'lsb_release', output='Distributor ID:\tUbuntu\nRelease:\t22.04\n')
        verify_os(node)
        assert not node.is_faulted

    def test_unsupported_os(self, strict_cluster):
        node = strict_cluster.get_node('worker-0')
        strict_cluster.transports['worker-0'].respond(
            'lsb_release', output='Distributor ID:\tDebian\nRelease:\t12\n')
        verify_os(node)
        assert node.is_faulted
        assert node.fault_message.startswith('Expected Ubuntu')

    def test_pristine(self, strict_cluster):
        node = strict_cluster.get_node('worker-0')
        verify_pristine(node)
        assert not node.is_faulted
        assert strict_cluster.transports['worker-0'].ran('./verify-pristine.sh')

    def test_not_pristine(self, strict_cluster):
        node = strict_cluster.get_node('worker-0')
        strict_cluster.transports['worker-0'].respond(
            './verify-pristine.sh', exit_code=1, error='Docker is already installed.')
        verify_pristine(node)
        assert node.is_faulted
        assert 'Docker is already installed.' in node.fault_message


class TestPrepare:
    """Test base package install and node-local files."""

    def test_prepare_uploads_helpers(self, strict_cluster):
        node = strict_cluster.get_node('worker-0')
        transport = strict_cluster.transports['worker-0']

        prepare_node(node, strict_cluster.definition)

        assert transport.ran('./prepare.sh')
        assert any('mv ' in c and VAULT_CLI_PATH in c for c in transport.commands)
        assert any(NODE_ENV_PATH in c for c in transport.commands)
        assert _uploaded(transport, b'SWARM_NODE_NAME=worker-0\n')
        assert _uploaded(transport, b'SWARM_MANAGERS="10.0.0.10 10.0.0.11 10.0.0.12"')
        assert _uploaded(transport, b'vault operator')

    def test_prepare_failure_stops(self, strict_cluster):
        node = strict_cluster.get_node('worker-0')
        transport = strict_cluster.transports['worker-0']
        transport.respond('./prepare.sh', exit_code=100)

        prepare_node(node, strict_cluster.definition)

        assert node.is_faulted
        assert not any(VAULT_CLI_PATH in c for c in transport.commands)


class TestChecks:
    """Test health checks."""

    def test_manager_healthy(self, strict_cluster):
        node = strict_cluster.get_node('manager-1')
        check_manager(node)
        assert not node.is_faulted
        assert node.status == 'ready'
        commands = strict_cluster.transports['manager-1'].commands
        assert [c for c in commands if 'docker info' in c or 'consul' in c or 'vault-direct' in c] == commands

    def test_manager_sealed_vault(self, cluster):
        node = cluster.get_node('manager-1')
        cluster.transports['manager-1'].respond('vault-direct status', exit_code=2)
        check_manager(node)
        assert node.is_faulted
        assert 'Vault is not unsealed' in node.fault_message

    def test_worker_docker_down(self, cluster):
        node = cluster.get_node('worker-1')
        transport = cluster.transports['worker-1']
        transport.respond('docker info', exit_code=1, error='Cannot connect to the Docker daemon')
        check_worker(node)
        assert node.is_faulted
        assert 'Cannot connect to the Docker daemon' in node.fault_message
        # later checks don't run once faulted
        assert not transport.ran('consul')

    def test_worker_skips_vault(self, cluster):
        node = cluster.get_node('worker-1')
        check_worker(node)
        assert not cluster.transports['worker-1'].ran('vault')
        assert node.status == 'ready'


class TestParseVaultInit:
    def test_parses_keys_and_token(self):
        keys, token = parse_vault_init(VAULT_INIT_OUTPUT)
        assert keys == ['key-one', 'key-two', 'key-three']
        assert token == 's.root-token'

    def test_missing_token(self):
        with pytest.raises(ValueError):
            parse_vault_init('Unseal Key 1: abc\n')


class TestConsulAndDocker:
    """Test manager and worker service configuration."""

    def test_configure_worker(self, strict_cluster, fake_clock):
        node = strict_cluster.get_node('worker-0')
        transport = strict_cluster.transports['worker-0']

        ClusterSetup(strict_cluster).configure_worker(node)

        assert not node.is_faulted
        assert transport.ran('./setup-consul.sh agent 1.0.0 dc1 10.0.0.20 -')
        assert transport.ran('consul join 10.0.0.10 10.0.0.11 10.0.0.12')
        assert transport.ran('./setup-docker.sh latest')
        assert not transport.ran('setup-vault')

    def test_configure_manager(self, strict_cluster, fake_clock):
        node = strict_cluster.get_node('manager-2')
        transport = strict_cluster.transports['manager-2']

        ClusterSetup(strict_cluster).configure_manager(node)

        assert not node.is_faulted
        assert transport.ran('./setup-consul.sh server')
        assert transport.ran('./setup-vault.sh 0.9.0 10.0.0.12')
        assert transport.ran('./setup-docker.sh latest')

    def test_join_failure_skips_docker(self, strict_cluster, fake_clock):
        node = strict_cluster.get_node('worker-0')
        transport = strict_cluster.transports['worker-0']
        transport.respond('consul join', exit_code=1)

        ClusterSetup(strict_cluster, join_timeout=20, join_interval=5).configure_worker(node)

        assert node.is_faulted
        assert 'Consul' in node.fault_message
        assert len(transport.ran('consul join')) == 5
        assert not transport.ran('setup-docker')

    def test_encryption_key_is_classified(self, cluster_data, build_cluster, fake_clock, caplog):
        cluster_data['consul'] = {'encryption_key': 'c2VjcmV0LWtleQ=='}
        definition = ClusterDefinition.from_dict(cluster_data)
        proxy, transports = build_cluster(definition, default_options=RunOptions.FAULT_ON_ERROR)

        with caplog.at_level(logging.INFO):
            ClusterSetup(proxy).configure_worker(proxy.get_node('worker-1'))

        assert transports['worker-1'].ran('c2VjcmV0LWtleQ==')
        assert 'c2VjcmV0LWtleQ==' not in caplog.text

    def test_registry_login(self, cluster_data, build_cluster, fake_clock, caplog):
        cluster_data['docker'] = {
            'registry': 'registry.example.com',
            'registry_username': 'deploy',
            'registry_password': 'hunter2',
        }
        definition = ClusterDefinition.from_dict(cluster_data)
        proxy, transports = build_cluster(definition, default_options=RunOptions.FAULT_ON_ERROR)

        with caplog.at_level(logging.INFO):
            ClusterSetup(proxy).configure_worker(proxy.get_node('worker-1'))

        assert transports['worker-1'].ran('docker login -u deploy -p hunter2 registry.example.com')
        assert 'hunter2' not in caplog.text


class TestSwarm:
    """Test swarm creation, joins, networks and labels."""

    def _setup_with_tokens(self, cluster):
        manager = cluster.transports['manager-0']
        manager.respond('join-token -q worker', output='SWMTKN-worker\n')
        manager.respond('join-token -q manager', output='SWMTKN-manager\n')
        setup = ClusterSetup(cluster)
        setup.create_swarm(cluster.manager)
        return setup

    def test_create_swarm_collects_tokens(self, strict_cluster):
        setup = self._setup_with_tokens(strict_cluster)
        assert setup.swarm_worker_token == 'SWMTKN-worker'
        assert setup.swarm_manager_token == 'SWMTKN-manager'
        assert strict_cluster.transports['manager-0'].ran('docker swarm init --advertise-addr 10.0.0.10:2377')

    def test_create_swarm_without_token_faults(self, strict_cluster):
        setup = ClusterSetup(strict_cluster)
        setup.create_swarm(strict_cluster.manager)
        assert strict_cluster.manager.is_faulted
        assert 'join token' in strict_cluster.manager.fault_message

    def test_join_swarm_by_role(self, strict_cluster):
        setup = self._setup_with_tokens(strict_cluster)
        setup.join_swarm(strict_cluster.get_node('worker-0'))
        setup.join_swarm(strict_cluster.get_node('manager-1'))
        assert strict_cluster.transports['worker-0'].ran('docker swarm join --token SWMTKN-worker 10.0.0.10:2377')
        assert strict_cluster.transports['manager-1'].ran('docker swarm join --token SWMTKN-manager 10.0.0.10:2377')

    def test_join_without_token_faults(self, strict_cluster):
        node = strict_cluster.get_node('worker-0')
        ClusterSetup(strict_cluster).join_swarm(node)
        assert node.is_faulted

    def test_label_nodes(self, strict_cluster):
        setup = ClusterSetup(strict_cluster)
        strict_cluster.get_node('worker-1').fault('unreachable')

        setup.label_nodes(strict_cluster.manager)

        labels = strict_cluster.transports['manager-0'].ran('docker node update --label-add')
        assert len(labels) == 4 * 2 + 1
        assert any('storage=ssd worker-0' in c for c in labels)
        assert any('swarm.role=manager manager-2' in c for c in labels)
        assert any('swarm.datacenter=dc1 worker-0' in c for c in labels)
        assert not any('worker-1' in c for c in labels)

    def test_create_networks(self, cluster_data, build_cluster):
        cluster_data['networks'] = ['frontend', 'backend']
        proxy, transports = build_cluster(ClusterDefinition.from_dict(cluster_data))

        ClusterSetup(proxy).create_networks(proxy.manager)

        created = transports['manager-0'].ran('docker network create')
        assert len(created) == 2
        assert created[0].endswith("--driver overlay --opt encrypted --attachable frontend'")

    def test_pull_images(self, cluster_data, build_cluster):
        cluster_data['docker'] = {'images': ['nginx:1.25', 'redis:7']}
        proxy, transports = build_cluster(ClusterDefinition.from_dict(cluster_data))

        ClusterSetup(proxy).pull_images(proxy.get_node('worker-0'))

        assert transports['worker-0'].ran('docker pull nginx:1.25')
        assert transports['worker-0'].ran('docker pull redis:7')


class TestInitializeVault:
    """Test Vault initialization across the manager quorum."""

    def test_initialize_and_unseal(self, strict_cluster, swarm_home, fake_clock):
        for transport in strict_cluster.transports.values():
            seal_vault(transport, 'key-two')
        strict_cluster.transports['manager-0'].respond('vault-direct init', output=VAULT_INIT_OUTPUT)
        setup = ClusterSetup(strict_cluster)

        setup.initialize_vault()

        assert strict_cluster.transports['manager-0'].ran('vault-direct init -key-shares=3 -key-threshold=2')
        assert setup.secrets.vault_unseal_keys == ['key-one', 'key-two', 'key-three']
        assert setup.secrets.vault_root_token == 's.root-token'
        assert strict_cluster.secrets is setup.secrets
        for manager in strict_cluster.managers:
            transport = strict_cluster.transports[manager.name]
            assert transport.ran('vault-direct unseal key-one')
            assert transport.ran('vault-direct unseal key-two')
            assert not transport.ran('vault-direct unseal key-three')

        path = get_secrets_path('test')
        saved = json.loads(path.read_text())
        assert saved['vault_root_token'] == 's.root-token'
        assert oct(path.stat().st_mode & 0o777) == oct(0o600)

    def test_init_failure_raises(self, strict_cluster, swarm_home):
        strict_cluster.transports['manager-0'].respond('vault-direct init', exit_code=2)
        with pytest.raises(CommandError):
            ClusterSetup(strict_cluster).initialize_vault()
        assert not get_secrets_path('test').exists()

    def test_vault_not_ready_raises(self, strict_cluster, swarm_home, fake_clock):
        strict_cluster.transports['manager-0'].respond('vault-direct init', output=VAULT_INIT_OUTPUT)
        strict_cluster.transports['manager-1'].respond('vault-direct status', exit_code=1)
        with pytest.raises(NodeTimeoutError):
            ClusterSetup(strict_cluster, vault_timeout=10, vault_interval=5).initialize_vault()
        # keys are saved before waiting so they're never lost
        assert get_secrets_path('test').exists()

    def test_unseal_failure_raises(self, strict_cluster, swarm_home, fake_clock):
        for transport in strict_cluster.transports.values():
            seal_vault(transport, 'key-two')
        strict_cluster.transports['manager-0'].respond('vault-direct init', output=VAULT_INIT_OUTPUT)
        strict_cluster.transports['manager-2'].respond('vault-direct unseal key-one', exit_code=2)
        with pytest.raises(RemoteError) as exc:
            ClusterSetup(strict_cluster).initialize_vault()
        assert 'manager-2' in str(exc.value)


class TestHardening:
    """Test password rotation and completion marker."""

    def test_root_password_generated_once(self, cluster):
        setup = ClusterSetup(cluster)
        assert len(setup.secrets.root_password) >= 24

    def test_strong_password(self, strict_cluster, caplog):
        setup = ClusterSetup(strict_cluster)
        node = strict_cluster.get_node('worker-0')
        transport = strict_cluster.transports['worker-0']

        with caplog.at_level(logging.DEBUG):
            setup.set_strong_password(node)

        expected = f"sysadmin:{setup.secrets.root_password}".encode()
        assert _uploaded(transport, expected)
        assert setup.secrets.root_password not in caplog.text
        assert transport.ran('./set-strong-password.sh')

    def test_mark_complete(self, strict_cluster):
        node = strict_cluster.get_node('worker-0')
        ClusterSetup(strict_cluster).mark_complete(node)
        assert strict_cluster.transports['worker-0'].ran(SETUP_MARKER)
        assert node.status == 'ready'
