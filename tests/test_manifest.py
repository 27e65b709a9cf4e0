"""Tests for manifest.py - manifest parsing and validation."""

import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError
from manifest import (
    DeploymentSettings,
    Manifest,
    ManifestLoader,
    ReadinessPolicy,
    ResourceKind,
    ResourceSpec,
    RetryPolicy,
    canonical_hash,
    iter_references,
    load_manifest,
)


def _resource(**overrides):
    data = {'name': 'vpc', 'kind': 'network', 'params': {'cidr': '10.0.0.0/16'}}
    data.update(overrides)
    return data


class TestResourceSpec:
    """Tests for ResourceSpec parsing."""

    def test_from_dict(self):
        spec = ResourceSpec.from_dict(_resource(depends_on=['role']))
        assert spec.name == 'vpc'
        assert spec.kind == ResourceKind.NETWORK
        assert spec.params == {'cidr': '10.0.0.0/16'}
        assert spec.depends_on == ('role',)

    def test_single_dependency_string(self):
        spec = ResourceSpec.from_dict(_resource(depends_on='role'))
        assert spec.depends_on == ('role',)

    def test_duplicate_dependencies_collapsed(self):
        spec = ResourceSpec.from_dict(_resource(depends_on=['a', 'b', 'a']))
        assert spec.depends_on == ('a', 'b')

    def test_references_are_dependencies(self):
        spec = ResourceSpec.from_dict({
            'name': 'web', 'kind': 'compute-instance',
            'params': {
                'image': 'img-1', 'instance_type': 'small', 'subnet': '${public.id}',
                'security_rule_sets': ['${sg-a}', '${sg-b}'],
            },
            'depends_on': ['sg-a'],
        })
        assert spec.references == ('public', 'sg-a', 'sg-b')
        assert spec.dependencies == ('sg-a', 'public', 'sg-b')

    def test_missing_name(self):
        with pytest.raises(ConfigError, match='missing required field: name'):
            ResourceSpec.from_dict({'kind': 'network'})

    def test_invalid_name(self):
        with pytest.raises(ConfigError, match='invalid name'):
            ResourceSpec.from_dict(_resource(name='my vpc'))

    def test_unknown_kind(self):
        with pytest.raises(ConfigError, match="unknown kind 'database'"):
            ResourceSpec.from_dict(_resource(kind='database'))

    def test_missing_required_param(self):
        with pytest.raises(ConfigError, match='missing required params: cidr'):
            ResourceSpec.from_dict({'name': 'sub', 'kind': 'subnet', 'params': {'network': 'x'}})

    def test_unrecognized_param(self):
        with pytest.raises(ConfigError, match='unrecognized params: size'):
            ResourceSpec.from_dict(_resource(params={'cidr': '10.0.0.0/16', 'size': 'xl'}))

    def test_spec_hash_ignores_dependencies(self):
        a = ResourceSpec.from_dict(_resource())
        b = ResourceSpec.from_dict(_resource(depends_on=['role']))
        assert a.spec_hash == b.spec_hash

    def test_spec_hash_tracks_params(self):
        a = ResourceSpec.from_dict(_resource())
        b = ResourceSpec.from_dict(_resource(params={'cidr': '10.1.0.0/16'}))
        assert a.spec_hash != b.spec_hash

    def test_params_copied(self):
        params = {'cidr': '10.0.0.0/16', 'tags': {'env': 'dev'}}
        spec = ResourceSpec.from_dict(_resource(params=params))
        params['tags']['env'] = 'prod'
        assert spec.params['tags'] == {'env': 'dev'}

    def test_to_dict(self):
        data = _resource(depends_on=['role'])
        assert ResourceSpec.from_dict(data).to_dict() == data


class TestHelpers:
    """Tests for reference scanning and hashing."""

    def test_iter_references_nested(self):
        refs = list(iter_references({'a': ['${x}', {'b': 'prefix-${y.cidr}-suffix'}], 'c': 3}))
        assert refs == [('x', None), ('y', 'cidr')]

    def test_canonical_hash_key_order_independent(self):
        assert canonical_hash({'a': 1, 'b': 2}) == canonical_hash({'b': 2, 'a': 1})


class TestSettings:
    """Tests for settings parsing."""

    def test_defaults(self):
        settings = DeploymentSettings.from_dict(None)
        assert settings.max_workers == 4
        assert settings.retry.max_attempts == 5
        assert settings.readiness.timeout == 300.0
        assert settings.run_timeout is None
        assert settings.validate is True
        assert settings.prune is False

    def test_from_dict(self):
        settings = DeploymentSettings.from_dict({
            'max_workers': 8,
            'retry': {'max_attempts': 3, 'base_delay': 0.5},
            'readiness': {'interval': 2, 'timeouts': {'compute-instance': 600}},
            'run_timeout': 1800,
            'prune': True,
        })
        assert settings.max_workers == 8
        assert settings.retry.max_attempts == 3
        assert settings.retry.base_delay == 0.5
        assert settings.readiness.timeout_for('compute-instance') == 600.0
        assert settings.readiness.timeout_for('network') == 300.0
        assert settings.run_timeout == 1800.0
        assert settings.prune is True

    def test_invalid_max_workers(self):
        with pytest.raises(ConfigError):
            DeploymentSettings.from_dict({'max_workers': 0})

    @pytest.mark.parametrize('data, key', [
        ({'max_workers': 'four'}, 'settings.max_workers'),
        ({'max_workers': True}, 'settings.max_workers'),
        ({'run_timeout': 'soon'}, 'settings.run_timeout'),
        ({'retry': {'max_attempts': 'many'}}, 'settings.retry.max_attempts'),
        ({'retry': {'base_delay': [1]}}, 'settings.retry.base_delay'),
        ({'readiness': {'interval': 'fast'}}, 'settings.readiness.interval'),
        ({'readiness': {'timeouts': {'network': 'long'}}}, 'settings.readiness.timeouts.network'),
    ])
    def test_non_numeric_value(self, data, key):
        with pytest.raises(ConfigError, match=key):
            DeploymentSettings.from_dict(data)

    @pytest.mark.parametrize('data, section', [
        (['max_workers'], 'settings'),
        ({'retry': 3}, 'settings.retry'),
        ({'readiness': 'slow'}, 'settings.readiness'),
        ({'readiness': {'timeouts': [10]}}, 'settings.readiness.timeouts'),
    ])
    def test_section_not_a_mapping(self, data, section):
        with pytest.raises(ConfigError, match=f'{section} must be a mapping'):
            DeploymentSettings.from_dict(data)

    def test_numeric_strings_accepted(self):
        settings = DeploymentSettings.from_dict({'max_workers': '3', 'readiness': {'interval': '0.5'}})
        assert settings.max_workers == 3
        assert settings.readiness.interval == 0.5

    def test_unknown_kind_timeout(self):
        with pytest.raises(ConfigError, match='unknown kind'):
            ReadinessPolicy.from_dict({'timeouts': {'database': 10}})

    def test_round_trip(self):
        settings = DeploymentSettings.from_dict({'max_workers': 2, 'prune': True})
        assert DeploymentSettings.from_dict(settings.to_dict()) == settings


class TestRetryPolicy:
    """Tests for backoff computation."""

    def test_exponential(self):
        policy = RetryPolicy(base_delay=2.0, multiplier=2.0, max_delay=60.0)
        assert [policy.delay(n) for n in range(1, 5)] == [2.0, 4.0, 8.0, 16.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay=2.0, multiplier=10.0, max_delay=30.0)
        assert policy.delay(3) == 30.0

    def test_retry_after_raises_delay(self):
        assert RetryPolicy(base_delay=1.0).delay(1, retry_after=9) == 9.0

    def test_retry_after_never_lowers_delay(self):
        assert RetryPolicy(base_delay=4.0).delay(1, retry_after=1) == 4.0

    def test_retry_after_capped(self):
        assert RetryPolicy(max_delay=10.0).delay(1, retry_after=120) == 10.0

    def test_invalid_attempts(self):
        with pytest.raises(ConfigError):
            RetryPolicy.from_dict({'max_attempts': 0})


class TestManifest:
    """Tests for Manifest parsing."""

    def test_from_dict(self):
        manifest = Manifest.from_dict({
            'name': 'demo',
            'description': 'Demo',
            'resources': [_resource()],
        })
        assert manifest.name == 'demo'
        assert manifest.description == 'Demo'
        assert [r.name for r in manifest.resources] == ['vpc']

    def test_missing_resources(self):
        with pytest.raises(ConfigError, match='resources'):
            Manifest.from_dict({'name': 'demo'})

    def test_invalid_name(self):
        with pytest.raises(ConfigError, match='Invalid manifest name'):
            Manifest.from_dict({'name': '../escape', 'resources': []})

    def test_json_round_trip(self):
        manifest = Manifest.from_dict({'name': 'demo', 'resources': [_resource()]})
        restored = Manifest.from_json(manifest.to_json())
        assert restored.to_dict() == manifest.to_dict()

    def test_invalid_json(self):
        with pytest.raises(ConfigError, match='Invalid manifest JSON'):
            Manifest.from_json('{nope')


class TestManifestLoader:
    """Tests for loading manifests from site-config."""

    def test_list_and_load(self, site_config_dir):
        loader = ManifestLoader()
        assert loader.list_manifests() == ['web-tier']
        manifest = loader.load('web-tier')
        assert manifest.name == 'web-tier'
        assert len(manifest.resources) == 6
        assert manifest.settings.max_workers == 2
        assert manifest.source_path == site_config_dir / 'manifests' / 'web-tier.yaml'

    def test_unknown_manifest(self, site_config_dir):
        with pytest.raises(ConfigError, match='Available: web-tier'):
            ManifestLoader().load('nope')

    def test_load_file_json(self, tmp_path):
        path = tmp_path / 'demo.json'
        path.write_text(json.dumps({'name': 'demo', 'resources': [_resource()]}))
        assert ManifestLoader.load_file(path).name == 'demo'

    def test_load_file_missing(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            ManifestLoader.load_file(tmp_path / 'nope.yaml')

    def test_load_manifest_priority(self, site_config_dir):
        inline = json.dumps({'name': 'inline', 'resources': []})
        assert load_manifest(name='web-tier', json_str=inline).name == 'inline'
        assert load_manifest(name='web-tier').name == 'web-tier'

    def test_load_manifest_requires_source(self):
        with pytest.raises(ConfigError):
            load_manifest()
