"""Execution context and settings.

Settings are layered, later sources winning:
1. ~/.swarm-driver/settings.yaml (or $SWARM_DRIVER_HOME/settings.yaml)
2. Environment variables (SWARM_DRIVER_USER, SWARM_DRIVER_PASSWORD,
   SWARM_DRIVER_KEY, SWARM_DRIVER_MAX_PARALLEL, SWARM_DRIVER_WAIT_SECONDS)
3. Explicit overrides from the command line

The resulting ExecutionContext is built once per invocation and passed
to whatever needs it; nothing here is global.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_MAX_PARALLEL = 5
DEFAULT_WAIT_SECONDS = 60
DEFAULT_ONLINE_TIMEOUT = 300
DEFAULT_ONLINE_INTERVAL = 5

ENV_OVERRIDES = {
    'SWARM_DRIVER_MAX_PARALLEL': 'max_parallel',
    'SWARM_DRIVER_WAIT_SECONDS': 'wait_seconds',
}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class SshCredentials:
    """Credentials used to reach cluster nodes.

    A password is passed through sshpass; otherwise the key file (or the
    ssh agent) is used.
    """
    user: str = ''
    password: str = ''
    key_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.key_file, str):
            self.key_file = Path(self.key_file).expanduser()

    def __repr__(self) -> str:
        password = '***' if self.password else ''
        return f'SshCredentials(user={self.user!r}, password={password!r}, key_file={self.key_file!r})'


@dataclass
class ClusterSecrets:
    """Secrets generated while setting up a cluster."""
    cluster_name: str
    root_user: str = 'sysadmin'
    root_password: str = ''
    vault_root_token: str = ''
    vault_unseal_keys: list[str] = field(default_factory=list)
    vault_key_threshold: int = 1

    @classmethod
    def from_dict(cls, data: dict) -> 'ClusterSecrets':
        if 'cluster_name' not in data:
            raise ConfigError("Cluster secrets missing 'cluster_name'")
        return cls(
            cluster_name=data['cluster_name'],
            root_user=data.get('root_user', 'sysadmin'),
            root_password=data.get('root_password', ''),
            vault_root_token=data.get('vault_root_token', ''),
            vault_unseal_keys=list(data.get('vault_unseal_keys', [])),
            vault_key_threshold=int(data.get('vault_key_threshold', 1)),
        )

    def to_dict(self) -> dict:
        return {
            'cluster_name': self.cluster_name,
            'root_user': self.root_user,
            'root_password': self.root_password,
            'vault_root_token': self.vault_root_token,
            'vault_unseal_keys': list(self.vault_unseal_keys),
            'vault_key_threshold': self.vault_key_threshold,
        }

    def save(self, path: Optional[Path] = None) -> Path:
        """Write secrets as JSON readable only by the current user."""
        path = path or get_secrets_path(self.cluster_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        os.chmod(path, 0o600)
        logger.debug(f"Saved cluster secrets to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> 'ClusterSecrets':
        if not path.exists():
            raise ConfigError(f"Cluster secrets not found: {path}")
        try:
            with open(path, encoding='utf-8') as f:
                return cls.from_dict(json.load(f))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid cluster secrets file {path}: {e}") from e


@dataclass
class ExecutionContext:
    """Settings shared by every operation in one invocation."""
    credentials: SshCredentials = field(default_factory=SshCredentials)
    max_parallel: int = DEFAULT_MAX_PARALLEL
    wait_seconds: int = DEFAULT_WAIT_SECONDS
    online_timeout: int = DEFAULT_ONLINE_TIMEOUT
    online_interval: int = DEFAULT_ONLINE_INTERVAL
    log_dir: Optional[Path] = None
    report_dir: Optional[Path] = None
    secrets: Optional[ClusterSecrets] = None

    def __post_init__(self):
        if self.max_parallel < 1:
            raise ConfigError(f"max_parallel must be at least 1, got {self.max_parallel}")
        if isinstance(self.log_dir, str):
            self.log_dir = Path(self.log_dir).expanduser()
        if isinstance(self.report_dir, str):
            self.report_dir = Path(self.report_dir).expanduser()


def get_base_dir() -> Path:
    """Get the swarm-driver state directory ($SWARM_DRIVER_HOME or ~/.swarm-driver)."""
    if env_path := os.environ.get('SWARM_DRIVER_HOME'):
        return Path(env_path).expanduser()
    return Path.home() / '.swarm-driver'


def get_settings_path() -> Path:
    return get_base_dir() / 'settings.yaml'


def get_secrets_path(cluster_name: str) -> Path:
    return get_base_dir() / 'clusters' / f'{cluster_name}.json'


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping in {path}")
    return data


def load_settings(path: Optional[Path] = None) -> dict:
    """Load settings.yaml; a missing file yields empty settings."""
    path = path or get_settings_path()
    if not path.exists():
        logger.debug(f"No settings file at {path}")
        return {}
    return _parse_yaml(path)


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def build_context(overrides: Optional[dict] = None, settings_path: Optional[Path] = None) -> ExecutionContext:
    """Build the execution context from settings, environment and overrides.

    Args:
        overrides: Values from the command line; None entries are ignored.
            Recognised keys are the ExecutionContext fields plus user,
            password and key_file.
        settings_path: Alternative settings file.
    """
    settings = load_settings(settings_path)
    ssh = settings.get('ssh') or {}

    values: dict[str, Any] = {
        'user': ssh.get('user', ''),
        'password': ssh.get('password', ''),
        'key_file': ssh.get('key_file'),
        'max_parallel': settings.get('max_parallel', DEFAULT_MAX_PARALLEL),
        'wait_seconds': settings.get('wait_seconds', DEFAULT_WAIT_SECONDS),
        'online_timeout': settings.get('online_timeout', DEFAULT_ONLINE_TIMEOUT),
        'online_interval': settings.get('online_interval', DEFAULT_ONLINE_INTERVAL),
        'log_dir': settings.get('log_dir'),
        'report_dir': settings.get('report_dir') or get_base_dir() / 'reports',
    }

    if user := os.environ.get('SWARM_DRIVER_USER'):
        values['user'] = user
    if password := os.environ.get('SWARM_DRIVER_PASSWORD'):
        values['password'] = password
    if key_file := os.environ.get('SWARM_DRIVER_KEY'):
        values['key_file'] = key_file
    for env_name, key in ENV_OVERRIDES.items():
        if env_value := os.environ.get(env_name):
            values[key] = env_value

    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    return ExecutionContext(
        credentials=SshCredentials(
            user=values['user'] or '',
            password=values['password'] or '',
            key_file=values['key_file'],
        ),
        max_parallel=_as_int('max_parallel', values['max_parallel']),
        wait_seconds=_as_int('wait_seconds', values['wait_seconds']),
        online_timeout=_as_int('online_timeout', values['online_timeout']),
        online_interval=_as_int('online_interval', values['online_interval']),
        log_dir=values['log_dir'],
        report_dir=values['report_dir'],
    )
