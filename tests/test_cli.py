"""Tests for the CLI entry point and deployment verb handlers.

Runs the verbs end to end against the local rehearsal provider, using the
temporary site-config from conftest.
"""

import json
import logging
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import cli
from deploy_opr.cli import (
    EXIT_FATAL,
    EXIT_PARTIAL,
    EXIT_SUCCESS,
    cleanup_main,
    deploy_main,
    dispatch,
    plan_main,
    status_main,
    validate_main,
)
from deploy_opr.state import StateStore, StateStoreError

TARGET = ['-M', 'web-tier', '-T', 'rehearsal']


@pytest.fixture(autouse=True)
def restore_root_logging():
    """--json-output swaps root handlers; put them back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _stored(site_config_dir):
    return StateStore(site_config_dir / 'states').load('web-tier')


class TestDeploy:
    """Tests for the deploy verb."""

    def test_deploy_creates_everything(self, site_config_dir, capsys):
        assert deploy_main(TARGET) == EXIT_SUCCESS

        state = _stored(site_config_dir)
        assert len(state.resources) == 6
        assert all(rs.status.value == 'ready' for rs in state.resources.values())
        web = state.get('web')
        assert web.provider_id.startswith('i-')
        assert "deploy 'web-tier' on rehearsal: success" in capsys.readouterr().out

    def test_second_deploy_is_noop(self, site_config_dir, capsys):
        deploy_main(TARGET)
        first = _stored(site_config_dir)
        capsys.readouterr()

        assert deploy_main(TARGET + ['--json-output']) == EXIT_SUCCESS
        payload = json.loads(capsys.readouterr().out)
        assert {r['result'] for r in payload['resources']} == {'skipped'}

        second = _stored(site_config_dir)
        assert {n: rs.provider_id for n, rs in second.resources.items()} == \
            {n: rs.provider_id for n, rs in first.resources.items()}

    def test_json_output(self, site_config_dir, capsys):
        assert deploy_main(TARGET + ['--json-output']) == EXIT_SUCCESS
        payload = json.loads(capsys.readouterr().out)
        assert payload['verb'] == 'deploy'
        assert payload['target'] == 'rehearsal'
        assert payload['success'] is True
        assert payload['deployment'] == 'web-tier'
        assert len(payload['validation']) == 6
        assert all(v['ready'] for v in payload['validation'])

    def test_dry_run_makes_no_changes(self, site_config_dir, capsys):
        assert deploy_main(TARGET + ['--dry-run']) == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert '+ vpc (network): create' in out
        assert _stored(site_config_dir).resources == {}

    def test_report_dir(self, site_config_dir, tmp_path):
        report_dir = tmp_path / 'reports'
        assert deploy_main(TARGET + ['--report-dir', str(report_dir)]) == EXIT_SUCCESS
        written = sorted(p.suffix for p in report_dir.iterdir())
        assert written == ['.json', '.md']

    def test_cycle_is_fatal(self, tmp_path, capsys):
        manifest = {
            'name': 'loop',
            'resources': [
                {'name': 'a', 'kind': 'gateway', 'params': {'network': '${b}'}},
                {'name': 'b', 'kind': 'gateway', 'params': {'network': '${a}'}},
            ],
        }
        rc = deploy_main(['--manifest-json', json.dumps(manifest), '--state-dir', str(tmp_path)])
        assert rc == EXIT_FATAL
        assert 'Error:' in capsys.readouterr().err
        assert not (tmp_path / 'loop').exists()

    def test_missing_manifest_is_fatal(self, tmp_path, capsys):
        assert deploy_main(['--state-dir', str(tmp_path)]) == EXIT_FATAL
        assert 'specify a manifest' in capsys.readouterr().err

    def test_unknown_target_is_fatal(self, site_config_dir):
        assert deploy_main(['-M', 'web-tier', '-T', 'prod']) == EXIT_FATAL

    def test_invalid_max_workers_is_fatal(self, site_config_dir):
        assert deploy_main(TARGET + ['--max-workers', '0']) == EXIT_FATAL

    def test_non_numeric_setting_is_fatal(self, tmp_path, capsys):
        manifest = {'name': 'x', 'resources': [], 'settings': {'max_workers': 'four'}}
        rc = deploy_main(['--manifest-json', json.dumps(manifest), '--state-dir', str(tmp_path)])
        assert rc == EXIT_FATAL
        assert 'settings.max_workers' in capsys.readouterr().err

    def test_state_store_failure_reports_outcome(self, site_config_dir, tmp_path, capsys, monkeypatch):
        """A failed commit mid-run still produces a report with the fatal status."""
        write = StateStore._write
        writes = []

        def write_until_full(self, state):
            writes.append(state.version)
            if len(writes) >= 3:
                raise StateStoreError('disk full')
            write(self, state)

        monkeypatch.setattr(StateStore, '_write', write_until_full)
        report_dir = tmp_path / 'reports'

        rc = deploy_main(TARGET + ['--json-output', '--report-dir', str(report_dir)])

        assert rc == EXIT_FATAL
        captured = capsys.readouterr()
        assert 'state store: disk full' in captured.err
        payload = json.loads(captured.out)
        assert payload['status'] == 'fatal_error'
        assert payload['success'] is False
        assert 'disk full' in payload['error']
        assert payload['resources']
        assert sorted(p.suffix for p in report_dir.iterdir()) == ['.json', '.md']

    def test_manifest_file_with_adhoc_target(self, site_config_dir, tmp_path):
        path = site_config_dir / 'manifests' / 'web-tier.yaml'
        state_dir = tmp_path / 'adhoc'
        assert deploy_main(['--manifest-file', str(path), '--state-dir', str(state_dir)]) == EXIT_SUCCESS
        assert (state_dir / 'web-tier' / 'local-provider.json').exists()


class TestPlan:
    """Tests for the plan verb."""

    def test_plan_before_deploy(self, site_config_dir, capsys):
        assert plan_main(TARGET) == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert 'Plan (apply):' in out
        assert '6 create' in out

    def test_plan_after_deploy(self, site_config_dir, capsys):
        deploy_main(TARGET)
        capsys.readouterr()

        assert plan_main(TARGET + ['--json-output']) == EXIT_SUCCESS
        payload = json.loads(capsys.readouterr().out)
        assert {e['action'] for e in payload['plan']['entries']} == {'skip'}


class TestValidate:
    """Tests for the validate verb."""

    def test_all_ready(self, site_config_dir, capsys):
        deploy_main(TARGET)
        capsys.readouterr()

        assert validate_main(TARGET) == EXIT_SUCCESS
        assert '6/6 resources ready' in capsys.readouterr().out

    def test_not_deployed(self, site_config_dir, capsys):
        assert validate_main(TARGET + ['--json-output']) == EXIT_PARTIAL
        payload = json.loads(capsys.readouterr().out)
        assert payload['success'] is False
        assert not any(r['ready'] for r in payload['resources'])

    def test_validate_does_not_change_state(self, site_config_dir):
        deploy_main(TARGET)
        before = _stored(site_config_dir).to_dict()
        validate_main(TARGET)
        assert _stored(site_config_dir).to_dict() == before


class TestCleanup:
    """Tests for the cleanup verb."""

    def test_cleanup_with_yes(self, site_config_dir, capsys):
        deploy_main(TARGET)
        capsys.readouterr()

        assert cleanup_main(TARGET + ['--yes']) == EXIT_SUCCESS
        state = _stored(site_config_dir)
        assert all(rs.status.value == 'deleted' for rs in state.resources.values())
        provider_file = site_config_dir / 'states' / 'web-tier' / 'local-provider.json'
        assert json.loads(provider_file.read_text()) == {}

    def test_cleanup_aborted(self, site_config_dir, capsys):
        deploy_main(TARGET)
        capsys.readouterr()

        with patch('builtins.input', return_value='n'):
            assert cleanup_main(TARGET) == EXIT_PARTIAL
        assert 'Aborted.' in capsys.readouterr().out
        assert all(rs.status.value == 'ready' for rs in _stored(site_config_dir).resources.values())

    def test_cleanup_dry_run(self, site_config_dir, capsys):
        deploy_main(TARGET)
        capsys.readouterr()

        assert cleanup_main(TARGET + ['--dry-run']) == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert 'Plan (delete):' in out
        assert '- web (compute-instance): delete' in out


class TestStatus:
    """Tests for the status verb."""

    def test_empty(self, site_config_dir, capsys):
        assert status_main(TARGET) == EXIT_SUCCESS
        assert 'no recorded resources' in capsys.readouterr().out

    def test_after_deploy(self, site_config_dir, capsys):
        deploy_main(TARGET)
        capsys.readouterr()

        assert status_main(TARGET + ['--json-output']) == EXIT_SUCCESS
        payload = json.loads(capsys.readouterr().out)
        assert payload['deployment_id'] == 'web-tier'
        assert set(payload['resources']) == {'vpc', 'public', 'web-sg', 'web-role', 'web-profile', 'web'}


class TestMain:
    """Tests for the top-level entry point."""

    def test_no_args_prints_usage(self, capsys):
        assert cli.main([]) == 0
        out = capsys.readouterr().out
        assert 'Usage: iac-orchestrator <verb>' in out
        for verb in ('deploy', 'plan', 'validate', 'cleanup', 'status'):
            assert verb in out

    def test_unknown_verb(self, capsys):
        assert cli.main(['frobnicate']) == 2
        assert "Unknown command 'frobnicate'" in capsys.readouterr().err

    def test_version(self, capsys):
        with patch('cli.get_version', return_value='v1.2.3'):
            assert cli.main(['--version']) == 0
        assert 'v1.2.3' in capsys.readouterr().out

    def test_dispatch_unknown(self):
        assert dispatch('nope', []) is None

    def test_dispatches_to_verb(self, site_config_dir):
        assert cli.main(['plan'] + TARGET) == EXIT_SUCCESS
