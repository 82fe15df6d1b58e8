"""Tests for cli.py - argument parsing, context building and error mapping."""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import cli
import pytest
from remote.errors import CommandError


@pytest.fixture
def cluster_file(tmp_path, cluster_data):
    import yaml
    path = tmp_path / 'cluster.yaml'
    path.write_text(yaml.safe_dump(cluster_data))
    return path


class TestUsage:
    def test_no_args_prints_usage(self, capsys):
        assert cli.main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: swarm-driver' in out
        for name in ('setup', 'reboot', 'exec', 'health', 'vault', 'upload', 'shell'):
            assert f'  {name}' in out

    def test_global_options_without_command(self, capsys):
        assert cli.main(['--verbose']) == 1
        assert 'Commands:' in capsys.readouterr().out

    def test_unknown_command_exits(self):
        with pytest.raises(SystemExit):
            cli.main(['destroy'])

    def test_parser_reads_global_options(self):
        args = cli.build_parser().parse_args(
            ['-c', 'prod.yaml', '-u', 'admin', '-P', '3', 'exec', '-n', 'worker-0', '--', 'docker', 'ps'])
        assert args.cluster == Path('prod.yaml')
        assert args.user == 'admin'
        assert args.max_parallel == 3
        assert args.command == 'exec'
        assert args.node == ['worker-0']

    def test_version_falls_back(self):
        with patch('cli.subprocess.run', side_effect=OSError('git not found')):
            assert cli.get_version() == 'dev'


class TestMain:
    """Test context building and error mapping."""

    def test_missing_user(self, swarm_home, cluster_file, capsys):
        assert cli.main(['--cluster', str(cluster_file), 'health']) == 1
        assert 'SSH user is required' in capsys.readouterr().err

    def test_missing_cluster(self, swarm_home, capsys):
        assert cli.main(['--user', 'admin', 'health']) == 1
        assert '--cluster' in capsys.readouterr().err

    def test_invalid_cluster_file(self, swarm_home, tmp_path, capsys):
        path = tmp_path / 'cluster.yaml'
        path.write_text('name: x\nnodes: []\n')
        assert cli.main(['--user', 'admin', '--cluster', str(path), 'health']) == 1
        assert 'at least one node' in capsys.readouterr().err

    def test_unknown_node(self, swarm_home, cluster, capsys):
        with patch('commands.execute.open_cluster', return_value=cluster):
            assert cli.main(['-u', 'admin', '-c', 'x.yaml', 'exec', '-n', 'worker-9', '--', 'uptime']) == 1
        assert 'worker-9' in capsys.readouterr().err

    def test_remote_error(self, swarm_home, cluster, capsys):
        with patch('commands.health.open_cluster', side_effect=CommandError('consul members', 2)):
            assert cli.main(['-u', 'admin', '-c', 'x.yaml', 'health']) == 1
        assert '*** ERROR:' in capsys.readouterr().err

    def test_context_passed_to_command(self, swarm_home, cluster, monkeypatch):
        monkeypatch.setenv('SWARM_DRIVER_MAX_PARALLEL', '4')
        seen = {}

        def fake_run(self, args, context):
            seen['context'] = context
            return 0

        with patch('commands.health.HealthCommand.run', fake_run):
            assert cli.main(['-u', 'admin', '-c', 'x.yaml', '--report-dir', 'out', 'health']) == 0

        context = seen['context']
        assert context.credentials.user == 'admin'
        assert context.max_parallel == 4
        assert context.report_dir == Path('out')

    def test_exec_end_to_end(self, swarm_home, cluster, capsys):
        with patch('commands.execute.open_cluster', return_value=cluster):
            assert cli.main(['-u', 'admin', '-c', 'x.yaml', 'exec', '--managers', '--', 'uptime']) == 0
        out = capsys.readouterr().out
        assert '[manager-2] exit code=0' in out
        assert not cluster.transports['worker-0'].commands
