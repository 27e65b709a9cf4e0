"""Shared pytest fixtures for iac-orchestrator tests."""

import itertools
import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from deploy_opr.state import StateStore
from manifest import DeploymentSettings, ReadinessPolicy, ResourceSpec, RetryPolicy
from providers.base import ProviderStatus, ResourceNotFoundError


class RecordingProvider:
    """In-memory provider that records every call and replays scripted errors.

    Resources are identified by the 'tags': {'name': ...} param that the
    spec helpers below attach, so tests can script failures per logical name.
    """

    def __init__(self, events=None):
        self.calls: list[tuple[str, str]] = []
        self.events = events if events is not None else []
        self.resources: dict[str, dict] = {}
        self.describe_states: dict[str, list[ProviderStatus]] = {}
        self._errors: dict[tuple[str, str], list[Exception]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def fail(self, op: str, name: str, *errors: Exception) -> None:
        """Raise errors (in order) on the next calls of op for name."""
        self._errors.setdefault((op, name), []).extend(errors)

    def script_describe(self, name: str, *statuses: ProviderStatus) -> None:
        """Return statuses (in order, last one repeats) from describe for name."""
        self.describe_states[name] = list(statuses)

    def count(self, op: str, name: str = None) -> int:
        return sum(1 for o, n in self.calls if o == op and (name is None or n == name))

    def names(self, op: str) -> list[str]:
        return [n for o, n in self.calls if o == op]

    def _record(self, op: str, name: str) -> None:
        with self._lock:
            self.calls.append((op, name))
            self.events.append((op, name))
            errors = self._errors.get((op, name))
            error = errors.pop(0) if errors else None
        if error is not None:
            raise error

    def _name_of(self, provider_id: str) -> str:
        if provider_id not in self.resources:
            raise ResourceNotFoundError(f"No resource {provider_id}", code='not_found')
        return self.resources[provider_id]['name']

    def create(self, kind, params):
        name = params.get('tags', {}).get('name', kind)
        self._record('create', name)
        provider_id = f'{name}-{next(self._ids)}'
        with self._lock:
            self.resources[provider_id] = {'name': name, 'kind': kind, 'params': dict(params)}
        return provider_id, self._status(provider_id, kind, params)

    def update(self, provider_id, params):
        name = self.resources.get(provider_id, {}).get('name', provider_id)
        self._record('update', name)
        self._name_of(provider_id)
        with self._lock:
            self.resources[provider_id]['params'] = dict(params)
        return self._status(provider_id, self.resources[provider_id]['kind'], params)

    def describe(self, provider_id):
        name = self.resources.get(provider_id, {}).get('name', provider_id)
        self._record('describe', name)
        self._name_of(provider_id)
        scripted = self.describe_states.get(name)
        if scripted:
            return scripted.pop(0) if len(scripted) > 1 else scripted[0]
        resource = self.resources[provider_id]
        return self._status(provider_id, resource['kind'], resource['params'])

    def delete(self, provider_id):
        name = self.resources.get(provider_id, {}).get('name', provider_id)
        self._record('delete', name)
        self._name_of(provider_id)
        with self._lock:
            del self.resources[provider_id]
        return ProviderStatus(state='deleted')

    @staticmethod
    def _status(provider_id, kind, params):
        attributes = {'id': provider_id}
        if 'cidr' in params:
            attributes['cidr'] = params['cidr']
        if kind == 'compute-instance':
            return ProviderStatus(state='running', health='passing', attributes=attributes)
        return ProviderStatus(state='available', attributes=attributes)


class RecordingStore(StateStore):
    """StateStore that logs each commit into a shared event list."""

    def __init__(self, state_dir, events):
        super().__init__(state_dir)
        self.events = events

    def commit(self, name, resource_state):
        super().commit(name, resource_state)
        self.events.append(('commit', name, resource_state.status.value))


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def time(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


def spec(name, kind='network', params=None, depends_on=()):
    """ResourceSpec with a name tag so RecordingProvider can identify it."""
    base = dict(params or {})
    if not base:
        base = default_params(kind)
    base['tags'] = {'name': name}
    return ResourceSpec.from_dict({
        'name': name, 'kind': kind, 'params': base, 'depends_on': list(depends_on),
    })


def default_params(kind):
    return {
        'network': {'cidr': '10.0.0.0/16'},
        'subnet': {'network': 'net-x', 'cidr': '10.0.1.0/24'},
        'gateway': {'network': 'net-x'},
        'route-table': {'network': 'net-x'},
        'security-rule-set': {'network': 'net-x'},
        'identity-role': {'trust_policy': {'service': 'compute'}},
        'instance-profile': {'role': 'role-x'},
        'compute-instance': {'image': 'img-1', 'instance_type': 'small', 'subnet': 'subnet-x'},
    }[kind]


@pytest.fixture
def events():
    return []


@pytest.fixture
def provider(events):
    return RecordingProvider(events)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, events):
    store = RecordingStore(tmp_path / 'states', events)
    store.load('test-deploy')
    return store


@pytest.fixture
def settings():
    return DeploymentSettings(
        max_workers=4,
        retry=RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0, max_delay=10.0),
        readiness=ReadinessPolicy(interval=1.0, timeout=5.0),
    )


WEB_TIER_MANIFEST = """
name: web-tier
description: Network, firewall and one web instance
resources:
  - name: vpc
    kind: network
    params:
      cidr: 10.20.0.0/16
  - name: public
    kind: subnet
    params:
      network: ${vpc}
      cidr: 10.20.1.0/24
      zone: a
  - name: web-sg
    kind: security-rule-set
    params:
      network: ${vpc.id}
      ingress:
        - {port: 443, cidr: 0.0.0.0/0}
  - name: web-role
    kind: identity-role
    params:
      trust_policy: {service: compute}
  - name: web-profile
    kind: instance-profile
    params:
      role: ${web-role}
  - name: web
    kind: compute-instance
    params:
      image: img-debian-12
      instance_type: small
      subnet: ${public}
      security_rule_sets: ["${web-sg}"]
      instance_profile: ${web-profile}
settings:
  max_workers: 2
  readiness:
    interval: 0.01
    timeout: 1
"""


@pytest.fixture
def site_config_dir(tmp_path, monkeypatch):
    """Create a temporary site-config and point IAC_CONFIG_DIR at it.

    Creates:
    - site.yaml (defaults)
    - secrets.yaml (provider tokens)
    - targets/staging.yaml (rest provider)
    - targets/rehearsal.yaml (local provider, relative state dir)
    - manifests/web-tier.yaml
    """
    site = tmp_path / 'site-config'
    for d in ['targets', 'manifests']:
        (site / d).mkdir(parents=True, exist_ok=True)

    (site / 'site.yaml').write_text("""
defaults:
  region: eu-west
  request_timeout: 15
""")
    (site / 'secrets.yaml').write_text("""
provider_tokens:
  staging: tok-staging
  shared: tok-shared
""")
    (site / 'targets' / 'staging.yaml').write_text("""
provider: rest
endpoint: https://cloud.example.net/v1/
verify_tls: false
""")
    (site / 'targets' / 'rehearsal.yaml').write_text("""
provider: local
state_dir: states
token: shared
""")
    (site / 'manifests' / 'web-tier.yaml').write_text(WEB_TIER_MANIFEST)

    monkeypatch.setenv('IAC_CONFIG_DIR', str(site))
    return site
