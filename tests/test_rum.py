"""Tests for orchestration, configuration loading and the command line."""

import json
from unittest import mock

import jsonschema
import pytest

import rum
from conftest import make_container
from engine_client import ImageInfo
from registry_client import DEFAULT_REGISTRY
from rum import (Daemon, RumConfig, UpdateOrchestrator, filter_containers, load_config, main)
from update_detector import UpdateDecision

NGINX = (DEFAULT_REGISTRY, 'library/nginx')
NEW_IMAGE_ID = 'sha256:' + 'b' * 64


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ('RUM_CONFIG', 'RUM_INTERVAL', 'RUM_DOCKER_SOCKET', 'RUM_LOG_LEVEL',
                 'RUM_CONTAINERS', 'RUM_ALLOW_MAJOR_UPGRADE', 'RUM_RUN_ONCE', 'RUM_DRY_RUN'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def orchestrator(engine, registry):
    return UpdateOrchestrator(engine, registry)


@pytest.fixture
def outdated(engine, registry):
    """A running nginx:1.2.3 container with 1.2.4 available."""
    registry.set_tags(*NGINX, ['1.2.3', '1.2.4', '2.0.0'])
    engine.images['nginx:1.2.4'] = ImageInfo(NEW_IMAGE_ID, ['nginx:1.2.4'], [])
    return engine.add_container(make_container(name='/web', image='nginx:1.2.3'))


class TestFilterContainers:
    containers = [make_container(name='/flatnotes'), make_container(name='/atuin')]

    def test_bare_name_matches_slashed(self):
        assert [c.name for c in filter_containers(self.containers, ['flatnotes'])] == ['/flatnotes']

    def test_slashed_name_matches(self):
        assert [c.name for c in filter_containers(self.containers, ['/atuin'])] == ['/atuin']

    def test_unknown_name_matches_nothing(self):
        assert filter_containers(self.containers, ['nonexistent']) == []

    @pytest.mark.parametrize("name_filter", [None, []])
    def test_empty_filter_keeps_all(self, name_filter):
        assert len(filter_containers(self.containers, name_filter)) == 2


class TestCheckAndUpdate:
    def test_updates_outdated_container(self, orchestrator, engine, outdated):
        results = orchestrator.check_and_update()

        assert len(results) == 1
        assert results[0].updated
        assert results[0].error is None
        assert ('pull', 'nginx', '1.2.4') in engine.calls
        body = next(iter(engine.created_bodies.values()))
        assert body['Image'] == 'nginx:1.2.4'

    def test_major_upgrade_when_allowed(self, orchestrator, engine, outdated):
        orchestrator.check_and_update(allow_major_upgrade=True)
        assert ('pull', 'nginx', '2.0.0') in engine.calls

    def test_up_to_date_container_untouched(self, orchestrator, engine, registry):
        registry.set_tags(*NGINX, ['1.2.3'])
        engine.add_container(make_container(name='/web', image='nginx:1.2.3'))

        results = orchestrator.check_and_update()
        assert not results[0].updated
        assert results[0].error is None
        assert 'pull' not in engine.operations()

    def test_pull_failure_keeps_container(self, orchestrator, engine, outdated):
        engine.fail('pull', 'manifest unknown')
        result = orchestrator.check_and_update()[0]

        assert result.error == 'Failed to pull image nginx:1.2.4: manifest unknown'
        assert 'stop' not in engine.operations()

    def test_lost_container_is_reported(self, orchestrator, engine, outdated):
        engine.fail('create', 'Conflict')
        result = orchestrator.check_and_update()[0]

        assert not result.updated
        assert result.error == 'Create failed: Conflict (original container was removed)'

    def test_one_failure_does_not_stop_the_pass(self, orchestrator, engine, registry):
        engine.add_container(make_container(name='/first', image='nginx:1.2.3'))
        engine.add_container(make_container(name='/second', image='nginx:1.2.3'))

        with mock.patch.object(orchestrator.detector, 'evaluate',
                               side_effect=[RuntimeError('boom'), UpdateDecision(False)]):
            results = orchestrator.check_and_update()

        assert [r.container.name for r in results] == ['/first', '/second']
        assert results[0].error == 'Unexpected error: boom'
        assert results[1].error is None

    def test_name_filter(self, orchestrator, engine, outdated):
        engine.add_container(make_container(name='/other', image='nginx:1.2.3'))
        results = orchestrator.check_and_update(name_filter=['web'])
        assert [r.container.name for r in results] == ['/web']

    def test_latest_tag_pulls_same_tag(self, orchestrator, engine, registry):
        engine.images['nginx:latest'] = ImageInfo('sha256:' + 'a' * 64, ['nginx:latest'],
                                                  ['nginx@sha256:' + '1' * 64])
        registry.set_digest(*NGINX, 'latest', 'sha256:' + '2' * 64)
        engine.add_container(make_container(name='/web', image='nginx:latest'))

        assert orchestrator.check_and_update()[0].updated
        assert ('pull', 'nginx', 'latest') in engine.calls


class TestReporting:
    def test_dry_run_changes_nothing(self, orchestrator, engine, outdated):
        results = orchestrator.dry_run()

        assert results[0].needs_update
        assert results[0].reason == 'Version update available: 1.2.3 -> 1.2.4'
        assert set(engine.operations()) <= {'list', 'image'}

    def test_dry_run_up_to_date_has_no_reason(self, orchestrator, engine, registry):
        registry.set_tags(*NGINX, ['1.2.3'])
        engine.add_container(make_container(name='/web', image='nginx:1.2.3'))
        result = orchestrator.dry_run()[0]
        assert not result.needs_update
        assert result.reason is None

    def test_summary(self, orchestrator, engine, outdated):
        engine.add_container(make_container(name='/pinned', image='sha256:' + 'f' * 64))
        summary = orchestrator.get_update_summary()

        assert summary['total'] == 2
        assert summary['needing_update'] == 1
        assert [c.name for c in summary['update_candidates']] == ['/web']
        assert orchestrator.get_containers_needing_update() == summary['update_candidates']

    def test_report(self, orchestrator, outdated):
        assert orchestrator.get_update_report() == {
            'web': {'hasUpdate': True, 'localVersion': '1.2.3', 'remoteVersion': '1.2.4'}}


class TestDaemon:
    def test_stops_after_current_pass(self):
        orchestrator = mock.Mock()
        daemon = Daemon(orchestrator, RumConfig(interval=3600))
        orchestrator.check_and_update.side_effect = lambda *args: daemon.request_stop() or []

        daemon.run()

        assert orchestrator.check_and_update.call_count == 1
        assert not daemon.running

    def test_failed_pass_does_not_end_loop(self):
        orchestrator = mock.Mock()
        daemon = Daemon(orchestrator, RumConfig(interval=0.01))
        calls = []

        def check(*args):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError('registry down')
            daemon.request_stop()
            return []

        orchestrator.check_and_update.side_effect = check
        daemon.run()
        assert len(calls) == 2


class TestConfig:
    def test_defaults(self):
        config = load_config([])
        assert config.interval == rum.DEFAULT_INTERVAL
        assert config.log_level == 'INFO'
        assert config.container_names == []
        assert not config.allow_major_upgrade

    def test_file_values(self, tmp_path):
        path = tmp_path / 'rum.json'
        path.write_text(json.dumps({'interval': 60, 'container_names': ['web'], 'log_level': 'DEBUG'}))
        config = load_config(['--config', str(path)])
        assert config.interval == 60
        assert config.container_names == ['web']
        assert config.log_level == 'DEBUG'

    def test_precedence(self, tmp_path, monkeypatch):
        path = tmp_path / 'rum.json'
        path.write_text(json.dumps({'interval': 60}))
        monkeypatch.setenv('RUM_INTERVAL', '120')
        assert load_config(['--config', str(path)]).interval == 120
        assert load_config(['--config', str(path), '--interval', '30']).interval == 30

    def test_config_path_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / 'rum.json'
        path.write_text(json.dumps({'run_once': True}))
        monkeypatch.setenv('RUM_CONFIG', str(path))
        assert load_config([]).run_once

    def test_env_values(self, monkeypatch):
        monkeypatch.setenv('RUM_CONTAINERS', 'web, db,')
        monkeypatch.setenv('RUM_ALLOW_MAJOR_UPGRADE', 'true')
        monkeypatch.setenv('RUM_LOG_LEVEL', 'warning')
        config = load_config([])
        assert config.container_names == ['web', 'db']
        assert config.allow_major_upgrade
        assert config.log_level == 'WARNING'

    def test_flags(self):
        config = load_config(['--container', 'web', '--container', 'db', '--once', '--dry-run',
                              '--allow-major', '--log-level', 'debug', '--socket', '/run/docker.sock'])
        assert config.container_names == ['web', 'db']
        assert config.run_once and config.dry_run and config.allow_major_upgrade
        assert config.log_level == 'DEBUG'
        assert config.docker_socket == '/run/docker.sock'

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / 'rum.json'
        path.write_text(json.dumps({'images': []}))
        with pytest.raises(jsonschema.ValidationError):
            RumConfig.from_file(str(path))

    def test_invalid_interval(self):
        with pytest.raises(ValueError, match='Interval must be greater than 0'):
            load_config(['--interval', '0'])


class TestMain:
    @pytest.fixture
    def wired(self, monkeypatch, engine, registry):
        monkeypatch.setattr(rum, 'ContainerEngineClient', lambda socket_path: engine)
        monkeypatch.setattr(rum, 'RegistryClient', lambda: registry)
        return engine

    def test_once(self, wired, outdated):
        assert main(['--once']) == 0
        assert 'create' in wired.operations()
        assert wired.closed

    def test_dry_run(self, wired, outdated):
        assert main(['--dry-run']) == 0
        assert 'create' not in wired.operations()

    def test_missing_config_file(self, tmp_path):
        assert main(['--config', str(tmp_path / 'missing.json')]) == 1

    def test_malformed_config_file(self, tmp_path):
        path = tmp_path / 'rum.json'
        path.write_text('{"interval": ')
        assert main(['--config', str(path)]) == 1

    def test_schema_violation(self, tmp_path):
        path = tmp_path / 'rum.json'
        path.write_text(json.dumps({'interval': 'often'}))
        assert main(['--config', str(path)]) == 1

    def test_invalid_interval(self):
        assert main(['--interval', '-5']) == 1
