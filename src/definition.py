"""Cluster definition loading and validation.

A cluster definition names the nodes (name, address, role, labels) and
the cluster-wide Consul, Vault, Docker and proxy settings. It can be
written as YAML or JSON:

    name: prod
    datacenter: dc1
    nodes:
      - name: manager-0
        address: 10.0.0.10
        role: manager
      - name: worker-0
        address: 10.0.0.20
        labels:
          storage: ssd
"""

import ipaddress
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r'^[a-z0-9._-]+$')
HOSTNAME_PATTERN = re.compile(r'^(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))*$')
LABEL_PATTERN = re.compile(r'^[a-z0-9][a-z0-9.-]*$')

ROLE_MANAGER = 'manager'
ROLE_WORKER = 'worker'
ROLES = (ROLE_MANAGER, ROLE_WORKER)


@dataclass(frozen=True)
class NodeDefinition:
    """One inventory entry.

    Names and addresses are stored lower case.
    """
    name: str
    address: str
    role: str = ROLE_WORKER
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def is_manager(self) -> bool:
        return self.role == ROLE_MANAGER

    @property
    def is_worker(self) -> bool:
        return self.role == ROLE_WORKER

    @classmethod
    def from_dict(cls, data: dict) -> 'NodeDefinition':
        """Create NodeDefinition from dictionary.

        Accepts 'dns_name' for address and 'manager: true' for the role.
        """
        if 'name' not in data:
            raise ConfigError("Node missing required field: name")
        address = data.get('address', data.get('dns_name'))
        if not address:
            raise ConfigError(f"Node '{data['name']}' missing required field: address")
        role = data.get('role')
        if role is None:
            role = ROLE_MANAGER if data.get('manager') else ROLE_WORKER
        return cls(
            name=str(data['name']).lower(),
            address=str(address).lower(),
            role=str(role).lower(),
            labels={str(k): str(v) for k, v in (data.get('labels') or {}).items()},
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'address': self.address,
            'role': self.role,
        }
        if self.labels:
            d['labels'] = dict(self.labels)
        return d

    def validate(self) -> None:
        """Raises ConfigError if the entry is not valid."""
        if not NAME_PATTERN.match(self.name):
            raise ConfigError(
                f"Node name '{self.name}' is not valid. "
                "Only letters, numbers, periods, dashes, and underscores are allowed.")
        if self.role not in ROLES:
            raise ConfigError(f"Node '{self.name}' has unknown role '{self.role}'")
        if len(self.address) > 255 or not _is_host(self.address):
            raise ConfigError(f"Node '{self.name}' address '{self.address}' is not a valid host name or IP address")
        for key, value in self.labels.items():
            if not LABEL_PATTERN.match(key) or '..' in key or '--' in key:
                raise ConfigError(f"Node '{self.name}' label '{key}' is not valid")
            if any(c.isspace() for c in value):
                raise ConfigError(f"Node '{self.name}' label '{key}' value contains whitespace")


def _is_host(address: str) -> bool:
    try:
        ipaddress.ip_address(address)
        return True
    except ValueError:
        return bool(HOSTNAME_PATTERN.match(address))


@dataclass
class ConsulOptions:
    version: str = '1.0.0'
    encryption_key: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ConsulOptions':
        if not data:
            return cls()
        return cls(
            version=str(data.get('version', '1.0.0')),
            encryption_key=data.get('encryption_key'),
        )


@dataclass
class VaultOptions:
    """Vault settings.

    Attributes:
        key_count: Number of unseal key shares generated at initialization
        key_threshold: Number of shares needed to unseal
    """
    version: str = '0.9.0'
    key_count: int = 1
    key_threshold: int = 1

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'VaultOptions':
        if not data:
            return cls()
        return cls(
            version=str(data.get('version', '0.9.0')),
            key_count=int(data.get('key_count', 1)),
            key_threshold=int(data.get('key_threshold', 1)),
        )


@dataclass
class DockerOptions:
    version: str = 'latest'
    registry: str = 'https://registry-1.docker.io'
    registry_username: Optional[str] = None
    registry_password: Optional[str] = None
    images: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'DockerOptions':
        if not data:
            return cls()
        return cls(
            version=str(data.get('version', 'latest')),
            registry=data.get('registry', 'https://registry-1.docker.io'),
            registry_username=data.get('registry_username'),
            registry_password=data.get('registry_password'),
            images=list(data.get('images', [])),
        )


@dataclass
class ClusterDefinition:
    """A validated cluster inventory plus cluster-wide settings.

    Attributes:
        name: Cluster name
        datacenter: Consul datacenter
        nodes: Inventory entries
        consul: Consul settings
        vault: Vault settings
        docker: Docker settings
        proxy: Proxy settings stored in Consul as opaque JSON, keyed by proxy name
        networks: Overlay networks created after the swarm forms
        remote_path: Directories prepended to PATH on every node
        source_path: File the definition was loaded from
    """
    name: str
    nodes: list[NodeDefinition]
    datacenter: str = 'dc1'
    consul: ConsulOptions = field(default_factory=ConsulOptions)
    vault: VaultOptions = field(default_factory=VaultOptions)
    docker: DockerOptions = field(default_factory=DockerOptions)
    proxy: dict[str, Any] = field(default_factory=dict)
    networks: list[str] = field(default_factory=list)
    remote_path: Optional[str] = None
    source_path: Optional[Path] = None

    @property
    def managers(self) -> list[NodeDefinition]:
        return [n for n in self.nodes if n.is_manager]

    @property
    def workers(self) -> list[NodeDefinition]:
        return [n for n in self.nodes if n.is_worker]

    @property
    def sorted_managers(self) -> list[NodeDefinition]:
        return sorted(self.managers, key=lambda n: n.name.lower())

    @property
    def sorted_workers(self) -> list[NodeDefinition]:
        return sorted(self.workers, key=lambda n: n.name.lower())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'ClusterDefinition':
        """Create ClusterDefinition from dictionary (not validated)."""
        if 'name' not in data:
            raise ConfigError("Cluster definition missing required field: name")
        nodes_data = data.get('nodes')
        if not nodes_data:
            raise ConfigError("Cluster definition must have at least one node")
        nodes = []
        for i, node_data in enumerate(nodes_data):
            if not isinstance(node_data, dict):
                raise ConfigError(f"Node {i} must be a mapping")
            nodes.append(NodeDefinition.from_dict(node_data))
        return cls(
            name=str(data['name']),
            nodes=nodes,
            datacenter=str(data.get('datacenter', 'dc1')),
            consul=ConsulOptions.from_dict(data.get('consul')),
            vault=VaultOptions.from_dict(data.get('vault')),
            docker=DockerOptions.from_dict(data.get('docker')),
            proxy=dict(data.get('proxy') or {}),
            networks=list(data.get('networks') or []),
            remote_path=data.get('remote_path'),
            source_path=source_path,
        )

    def validate(self) -> None:
        """Validate the definition.

        Checks for:
        - Valid cluster and node names, addresses and labels
        - Duplicate node names or addresses
        - At least one manager, and an odd number of them
        - A Vault key threshold no larger than the key count

        Raises:
            ConfigError: If validation fails
        """
        if not NAME_PATTERN.match(self.name.lower()):
            raise ConfigError(f"Cluster name '{self.name}' is not valid")

        names: set[str] = set()
        addresses: set[str] = set()
        for node in self.nodes:
            node.validate()
            if node.name in names:
                raise ConfigError(f"Duplicate node name: '{node.name}'")
            if node.address in addresses:
                raise ConfigError(f"Duplicate node address: '{node.address}'")
            names.add(node.name)
            addresses.add(node.address)

        manager_count = len(self.managers)
        if manager_count == 0:
            raise ConfigError("Cluster must have at least one manager node")
        if manager_count % 2 == 0:
            raise ConfigError(f"Cluster must have an odd number of managers, found {manager_count}")

        if self.vault.key_count < 1:
            raise ConfigError("vault.key_count must be at least 1")
        if not 1 <= self.vault.key_threshold <= self.vault.key_count:
            raise ConfigError(
                f"vault.key_threshold ({self.vault.key_threshold}) must be between 1 "
                f"and vault.key_count ({self.vault.key_count})")


def load_cluster_definition(path: Path) -> ClusterDefinition:
    """Load and validate a cluster definition from a YAML or JSON file.

    Raises:
        ConfigError: If the file is missing or the definition is invalid
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Cluster definition not found: {path}")

    try:
        with open(path, encoding='utf-8') as f:
            if path.suffix == '.json':
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Invalid cluster definition {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Cluster definition {path} must be a mapping")

    definition = ClusterDefinition.from_dict(data, source_path=path)
    definition.validate()
    logger.debug(f"Loaded cluster '{definition.name}' with {len(definition.nodes)} node(s) from {path}")
    return definition
