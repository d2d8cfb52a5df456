import logging

import pytest

from conftest import api_error
from dwo_loadtest import cli, loadtest
from dwo_loadtest.config import Config


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def workdir(load_test_env, monkeypatch, tmp_path, restore_logging):
    monkeypatch.chdir(tmp_path)
    return tmp_path


class StubTool:
    exit_code = 0
    error = None
    configs = []

    def __init__(self, config, console=None):
        config.validate()
        StubTool.configs.append(config)

    async def run(self):
        if StubTool.error is not None:
            raise StubTool.error
        return StubTool.exit_code


@pytest.fixture
def stub_tool(monkeypatch):
    StubTool.exit_code = 0
    StubTool.error = None
    StubTool.configs = []
    monkeypatch.setattr(cli, 'dwoLoadTestTools', StubTool)
    return StubTool


def test_overrides_replace_environment(load_test_env):
    args = cli.create_argument_parser().parse_args([
        '--scenario', 'controller', '--executor-mode', 'ramping-vus', '--max-vus', '12',
        '--max-devworkspaces', '100', '--duration-minutes', '30', '--ready-timeout', '120',
        '--poll-interval', '5', '--namespace', 'dw-load', '--separate-namespaces', '--delete-after-ready',
        '--devworkspace-link', 'https://example.com/dw.yaml', '--no-cleanup', '--log-level', 'DEBUG',
    ])
    config = cli.apply_overrides(Config(load_env_file=False), args)
    assert config.executor_mode == 'ramping-vus'
    assert config.max_vus == 12
    assert config.max_devworkspaces == 100
    assert config.test_duration_minutes == 30
    assert config.ready_timeout == 120
    assert config.poll_interval == 5
    assert config.load_test_namespace == 'dw-load'
    assert config.use_separate_namespaces
    assert config.delete_after_ready
    assert config.devworkspace_link == 'https://example.com/dw.yaml'
    assert config.run_backup_test_hook
    assert config.log_level == 'DEBUG'


def test_absent_flags_keep_environment(load_test_env, monkeypatch):
    monkeypatch.setenv('MAX_VUS', '9')
    config = cli.apply_overrides(Config(load_env_file=False), cli.create_argument_parser().parse_args([]))
    assert config.max_vus == 9
    assert not config.use_separate_namespaces


def test_unknown_executor_is_rejected_by_parser():
    with pytest.raises(SystemExit):
        cli.create_argument_parser().parse_args(['--executor-mode', 'constant-vus'])


@pytest.mark.asyncio
async def test_main_returns_run_exit_code(workdir, stub_tool):
    stub_tool.exit_code = 1
    assert await cli.main(['--max-vus', '2']) == 1
    assert stub_tool.configs[0].max_vus == 2


@pytest.mark.asyncio
async def test_invalid_configuration_exit_code(workdir, stub_tool):
    assert await cli.main(['--max-vus', '0']) == cli.EXIT_CONFIG_ERROR


@pytest.mark.asyncio
async def test_interrupt_exit_code(workdir, stub_tool):
    stub_tool.error = KeyboardInterrupt()
    assert await cli.main([]) == cli.EXIT_INTERRUPTED


@pytest.mark.asyncio
async def test_log_file_is_written(workdir, stub_tool):
    log_file = workdir / 'cli.log'
    await cli.main(['--max-vus', '0', '--log-file', str(log_file)])
    assert 'Invalid configuration' in log_file.read_text()


@pytest.mark.asyncio
async def test_setup_failure_exit_code(workdir, cluster, monkeypatch):
    monkeypatch.setenv('CREATE_AUTOMOUNT_RESOURCES', 'true')
    monkeypatch.setattr(loadtest.KubeApiGateway, 'from_token', lambda *args, **kwargs: cluster)
    cluster.fail('create_config_map', api_error(403, 'Forbidden'))
    log_file = workdir / 'setup.log'

    assert await cli.main(['--log-file', str(log_file)]) == loadtest.EXIT_SETUP_FAILED
    assert 'Failed to create automount ConfigMap: 403' in log_file.read_text()
    assert cluster.closed
    assert not (workdir / 'summary.json').exists()
