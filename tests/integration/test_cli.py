import os
import sys

import pytest
import yaml
from click.testing import CliRunner

from convoy.CLI.main import cli

DUMMY = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def write_manifest(tmp_path):
    def write(services, **top_level):
        data = {'name': 'clitest', 'services': services}
        data.update(top_level)
        path = tmp_path / "convoy.yml"
        with open(path, 'w') as f:
            yaml.dump(data, f, sort_keys=False)
        return str(path)
    return write


def test_cli_help(runner):
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'Start services' in result.output
    assert '--runtime' in result.output


def test_cli_up_no_file(runner):
    result = runner.invoke(cli, ['-f', 'non_existent.yml', 'up'])
    assert result.exit_code == 2
    assert 'Error: non_existent.yml not found.' in result.output


def test_cli_config(runner, write_manifest):
    path = write_manifest({
        'db': {'image': 'postgres'},
        'cache': {'image': 'redis'},
        'web': {'image': 'nginx', 'depends_on': ['db', 'cache']},
    })
    result = runner.invoke(cli, ['-f', path, 'config'])
    assert result.exit_code == 0
    assert 'Project: clitest' in result.output
    assert 'Stage 1: db, cache' in result.output
    assert 'Stage 2: web' in result.output


def test_cli_cycle_is_invalid(runner, write_manifest):
    path = write_manifest({
        'a': {'image': 'x', 'depends_on': ['b']},
        'b': {'image': 'x', 'depends_on': ['a']},
    })
    result = runner.invoke(cli, ['-f', path, '--runtime', 'process', 'up', '-d'])
    assert result.exit_code == 2
    assert 'Circular dependency detected between services: a, b' in result.output


def test_cli_invalid_manifest(runner, write_manifest):
    path = write_manifest({
        'api': {'image': 'x', 'ports': ['8080:80']},
        'web': {'image': 'y', 'ports': ['8080:8000']},
    })
    result = runner.invoke(cli, ['-f', path, 'config'])
    assert result.exit_code == 2
    assert 'host port 8080/tcp is published by both' in result.output


def test_cli_process_lifecycle(runner, write_manifest, tmp_path):
    path = write_manifest({
        'db': {'image': 'dummy', 'command': [sys.executable, DUMMY]},
        'web': {'image': 'dummy', 'command': [sys.executable, DUMMY], 'depends_on': ['db']},
    })
    base = ['-f', path, '--runtime', 'process']

    result = runner.invoke(cli, base + ['up', '-d'])
    assert result.exit_code == 0, result.output
    assert 'Services started.' in result.output
    session_file = tmp_path / ".convoy" / "sessions" / "clitest.json"
    assert session_file.exists()

    try:
        result = runner.invoke(cli, base + ['ps'])
        assert result.exit_code == 0
        assert 'running' in result.output
        assert 'clitest-web-1' in result.output

        result = runner.invoke(cli, base + ['stop', '-t', '5'])
        assert result.exit_code == 0, result.output
        result = runner.invoke(cli, base + ['start'])
        assert result.exit_code == 0, result.output
    finally:
        result = runner.invoke(cli, base + ['down', '-t', '5'])

    assert result.exit_code == 0, result.output
    assert 'Services removed.' in result.output
    assert not session_file.exists()


def test_cli_failed_up(runner, write_manifest, tmp_path):
    path = write_manifest({
        'db': {'image': 'dummy', 'command': [sys.executable, DUMMY]},
        'web': {'image': 'dummy', 'command': ['/nonexistent/convoy-web'], 'depends_on': ['db']},
    })
    result = runner.invoke(cli, ['-f', path, '--runtime', 'process', 'up', '-d'])
    assert result.exit_code == 1
    assert 'Error: [web] failed to start' in result.output
    assert not (tmp_path / ".convoy" / "pids" / "clitest-db-1.pid").exists()


def test_cli_start_without_up(runner, write_manifest):
    path = write_manifest({'db': {'image': 'dummy', 'command': [sys.executable, DUMMY]}})
    result = runner.invoke(cli, ['-f', path, '--runtime', 'process', 'start'])
    assert result.exit_code == 1
    assert "run 'up' first" in result.output
