"""Shared pytest fixtures for swarm-driver tests.

No test talks to a real host: nodes are built on FakeTransport, which
records every command and file and answers from registered responses.
"""

import io
import sys
import threading
from pathlib import Path
from typing import Callable, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from cluster import VAULT_HA_MARKER, ClusterProxy  # noqa: E402
from definition import ClusterDefinition  # noqa: E402
from remote.errors import TransferError  # noqa: E402
from remote.node import NodeHandle  # noqa: E402
from remote.options import RunOptions  # noqa: E402
from remote.transport import InteractiveShell  # noqa: E402


class KeepOpenIO(io.StringIO):
    """StringIO whose contents survive close()."""

    def close(self) -> None:
        pass


class FakeTransport:
    """In-memory Transport.

    Responses are matched by substring against the full remote command
    line; the most recently registered match wins. Unmatched commands
    succeed with empty output. mktemp gets a fresh staging directory.
    """

    def __init__(self, host: str = 'fake', online=True):
        self.host = host
        self.online = online
        self.commands: list[str] = []
        self.files: dict[str, bytes] = {}
        self.probes = 0
        self.put_error: Optional[Exception] = None
        self.closed = False
        self.shell_output: list[str] = []
        self.shell_input = KeepOpenIO()
        self._responses: list[tuple] = []
        self._lock = threading.Lock()
        self._staging = 0

    def respond(
        self,
        pattern: str,
        exit_code: int = 0,
        output: str = '',
        error: str = '',
        raises: Optional[Exception] = None,
        handler: Optional[Callable[[str], tuple]] = None,
    ) -> None:
        self._responses.insert(0, (pattern, exit_code, output, error, raises, handler))

    def ran(self, pattern: str) -> list[str]:
        """Commands containing pattern, in order."""
        return [c for c in self.commands if pattern in c]

    def run(self, command: str, binary: bool = False, timeout: Optional[int] = None):
        with self._lock:
            self.commands.append(command)
            if command.startswith('mktemp -d'):
                self._staging += 1
                return 0, f'/tmp/swarm-bundle.{self._staging:08d}\n', ''
        for pattern, exit_code, output, error, raises, handler in self._responses:
            if pattern in command:
                if raises is not None:
                    raise raises
                if handler is not None:
                    return handler(command)
                return exit_code, output.encode() if binary else output, error
        return 0, b'' if binary else '', ''

    def put(self, data: bytes, remote_path: str) -> None:
        if self.put_error is not None:
            raise self.put_error
        with self._lock:
            self.files[remote_path] = data

    def get(self, remote_path: str) -> bytes:
        if remote_path not in self.files:
            raise TransferError(remote_path, 'No such file or directory')
        return self.files[remote_path]

    def probe(self, timeout: int) -> bool:
        with self._lock:
            self.probes += 1
            if isinstance(self.online, list):
                return self.online.pop(0) if self.online else True
            return bool(self.online)

    def open_shell(self) -> InteractiveShell:
        return InteractiveShell(self.shell_input, io.StringIO(''.join(f'{line}\n' for line in self.shell_output)))

    def close(self) -> None:
        self.closed = True


def seal_vault(transport: FakeTransport, unsealed_by: str) -> None:
    """Vault on transport reports sealed (HA ready) until the key unsealed_by is entered."""
    def status(command):
        if transport.ran(f'vault-direct unseal {unsealed_by}'):
            return 0, f"Sealed: false\n{VAULT_HA_MARKER}\n", ''
        return 2, f"Sealed: true\n{VAULT_HA_MARKER}\n", ''
    transport.respond('vault-direct status', handler=status)


class FakeClock:
    """Replacement for the time module: sleep advances a per-thread monotonic clock."""

    def __init__(self):
        self._local = threading.local()
        self._lock = threading.Lock()
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return getattr(self._local, 'now', 0.0)

    def time(self) -> float:
        return self.monotonic()

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
        self._local.now = self.monotonic() + seconds


@pytest.fixture
def fake_clock(monkeypatch):
    """Patch the clock used by polling, reboots, delay steps and pauses."""
    import cluster
    import common
    import remote.node
    import setup_opr.controller

    clock = FakeClock()
    for module in (common, remote.node, setup_opr.controller, cluster):
        monkeypatch.setattr(module, 'time', clock)
    return clock


@pytest.fixture
def swarm_home(tmp_path, monkeypatch):
    """Point the state directory (settings, secrets, reports) at tmp_path."""
    home = tmp_path / 'swarm-home'
    monkeypatch.setenv('SWARM_DRIVER_HOME', str(home))
    for name in ('SWARM_DRIVER_USER', 'SWARM_DRIVER_PASSWORD', 'SWARM_DRIVER_KEY',
                 'SWARM_DRIVER_MAX_PARALLEL', 'SWARM_DRIVER_WAIT_SECONDS'):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def make_node():
    """Factory for NodeHandles on FakeTransports."""
    def _make(name: str = 'node-0', address: str = '10.0.0.1', transport: Optional[FakeTransport] = None, **kwargs):
        return NodeHandle(name, address, transport or FakeTransport(address), **kwargs)
    return _make


CLUSTER_DATA = {
    'name': 'test',
    'datacenter': 'dc1',
    'nodes': [
        {'name': 'manager-0', 'address': '10.0.0.10', 'role': 'manager'},
        {'name': 'manager-1', 'address': '10.0.0.11', 'role': 'manager'},
        {'name': 'manager-2', 'address': '10.0.0.12', 'role': 'manager'},
        {'name': 'worker-0', 'address': '10.0.0.20', 'labels': {'storage': 'ssd'}},
        {'name': 'worker-1', 'address': '10.0.0.21'},
    ],
    'vault': {'key_count': 3, 'key_threshold': 2},
}


@pytest.fixture
def cluster_data():
    import copy
    return copy.deepcopy(CLUSTER_DATA)


@pytest.fixture
def cluster_definition(cluster_data):
    definition = ClusterDefinition.from_dict(cluster_data)
    definition.validate()
    return definition


@pytest.fixture
def build_cluster():
    """Factory returning (ClusterProxy, {node name: FakeTransport})."""
    def _build(definition: ClusterDefinition, default_options: RunOptions = RunOptions.NONE, secrets=None):
        transports: dict[str, FakeTransport] = {}

        def factory(node_def):
            transport = FakeTransport(node_def.address)
            transports[node_def.name] = transport
            return NodeHandle(node_def.name, node_def.address, transport, metadata=node_def,
                              remote_path=definition.remote_path)

        cluster = ClusterProxy(definition, factory, default_options=default_options, secrets=secrets)
        return cluster, transports
    return _build


@pytest.fixture
def cluster(cluster_definition, build_cluster):
    proxy, transports = build_cluster(cluster_definition)
    proxy.transports = transports
    return proxy
