"""Manifest loading and validation for deployment orchestration.

A manifest is the desired-state document for one deployment: an ordered
list of resources (network, subnet, rule sets, roles, instances, ...) with
their parameters and dependencies, plus optional execution settings.

Resource parameters may reference other resources:
    ${vpc}          provider id of resource 'vpc'
    ${vpc.id}       same as above
    ${vpc.cidr}     output attribute 'cidr' recorded for 'vpc'
Each reference is an implicit dependency.
"""

import copy
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

import yaml

from config import ConfigError, get_site_config_dir

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')
DEPLOYMENT_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$')
REFERENCE_PATTERN = re.compile(r'\$\{([A-Za-z0-9_-]+)(?:\.([A-Za-z0-9_]+))?\}')


class ResourceKind(str, Enum):
    """Provisionable resource kinds for the target provider."""
    NETWORK = 'network'
    SUBNET = 'subnet'
    GATEWAY = 'gateway'
    ROUTE_TABLE = 'route-table'
    SECURITY_RULE_SET = 'security-rule-set'
    IDENTITY_ROLE = 'identity-role'
    INSTANCE_PROFILE = 'instance-profile'
    COMPUTE_INSTANCE = 'compute-instance'


@dataclass(frozen=True)
class KindSchema:
    """Recognized parameters for a resource kind."""
    required: frozenset
    optional: frozenset = frozenset()

    @property
    def recognized(self) -> frozenset:
        return self.required | self.optional


KIND_SCHEMAS: dict[ResourceKind, KindSchema] = {
    ResourceKind.NETWORK: KindSchema(
        required=frozenset({'cidr'}),
        optional=frozenset({'dns_support', 'tags'}),
    ),
    ResourceKind.SUBNET: KindSchema(
        required=frozenset({'network', 'cidr'}),
        optional=frozenset({'zone', 'public', 'tags'}),
    ),
    ResourceKind.GATEWAY: KindSchema(
        required=frozenset({'network'}),
        optional=frozenset({'tags'}),
    ),
    ResourceKind.ROUTE_TABLE: KindSchema(
        required=frozenset({'network'}),
        optional=frozenset({'routes', 'subnets', 'tags'}),
    ),
    ResourceKind.SECURITY_RULE_SET: KindSchema(
        required=frozenset({'network'}),
        optional=frozenset({'description', 'ingress', 'egress', 'tags'}),
    ),
    ResourceKind.IDENTITY_ROLE: KindSchema(
        required=frozenset({'trust_policy'}),
        optional=frozenset({'description', 'policies', 'managed_policies', 'tags'}),
    ),
    ResourceKind.INSTANCE_PROFILE: KindSchema(
        required=frozenset({'role'}),
        optional=frozenset({'tags'}),
    ),
    ResourceKind.COMPUTE_INSTANCE: KindSchema(
        required=frozenset({'image', 'instance_type', 'subnet'}),
        optional=frozenset({
            'security_rule_sets', 'instance_profile', 'key_name',
            'user_data', 'disk_gb', 'health_check', 'tags',
        }),
    ),
}


def iter_references(value: Any) -> Iterator[tuple[str, Optional[str]]]:
    """Yield (resource_name, attribute) for every ${...} reference in value.

    Walks nested dicts and lists; attribute is None for bare ${name}.
    """
    if isinstance(value, str):
        for match in REFERENCE_PATTERN.finditer(value):
            yield match.group(1), match.group(2)
    elif isinstance(value, dict):
        for key in value:
            yield from iter_references(value[key])
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def canonical_hash(data: Any) -> str:
    """SHA-256 of the canonical JSON encoding of data."""
    encoded = json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)
    return hashlib.sha256(encoded.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class ResourceSpec:
    """A single resource in the desired state.

    Attributes:
        name: Logical name (unique within a manifest, stable across runs)
        kind: Resource kind
        params: Kind-specific parameters (may contain ${...} references)
        depends_on: Explicit dependency names, in declaration order
    """
    name: str
    kind: ResourceKind
    params: dict = field(default_factory=dict, hash=False)
    depends_on: tuple[str, ...] = ()

    @property
    def references(self) -> tuple[str, ...]:
        """Names referenced from params, first occurrence order."""
        seen: dict[str, None] = {}
        for ref_name, _ in iter_references(self.params):
            seen.setdefault(ref_name, None)
        return tuple(seen)

    @property
    def dependencies(self) -> tuple[str, ...]:
        """Explicit dependencies followed by implicit (reference) ones."""
        seen: dict[str, None] = {}
        for dep in self.depends_on + self.references:
            seen.setdefault(dep, None)
        return tuple(seen)

    @property
    def spec_hash(self) -> str:
        return canonical_hash({'kind': self.kind.value, 'params': self.params})

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> 'ResourceSpec':
        """Create and validate a ResourceSpec from a manifest entry.

        Raises:
            ConfigError: On a missing field, unknown kind or unrecognized parameter
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Resource {index} must be a mapping")
        if 'name' not in data:
            raise ConfigError(f"Resource {index} missing required field: name")
        name = str(data['name'])
        if not NAME_PATTERN.match(name):
            raise ConfigError(
                f"Resource {index} has invalid name '{name}' "
                "(letters, digits, '-' and '_' only)"
            )
        if 'kind' not in data:
            raise ConfigError(f"Resource '{name}' missing required field: kind")
        try:
            kind = ResourceKind(data['kind'])
        except ValueError:
            known = ', '.join(k.value for k in ResourceKind)
            raise ConfigError(
                f"Resource '{name}' has unknown kind '{data['kind']}'. Known kinds: {known}"
            ) from None

        params = data.get('params') or {}
        if not isinstance(params, dict):
            raise ConfigError(f"Resource '{name}' params must be a mapping")
        _validate_params(name, kind, params)

        depends_on = data.get('depends_on') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list):
            raise ConfigError(f"Resource '{name}' depends_on must be a list of names")

        return cls(
            name=name,
            kind=kind,
            params=copy.deepcopy(params),
            depends_on=tuple(dict.fromkeys(str(d) for d in depends_on)),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind.value,
        }
        if self.params:
            d['params'] = copy.deepcopy(self.params)
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        return d


def _validate_params(name: str, kind: ResourceKind, params: dict) -> None:
    """Check params against the kind's recognized options."""
    schema = KIND_SCHEMAS[kind]
    missing = sorted(schema.required - params.keys())
    if missing:
        raise ConfigError(
            f"Resource '{name}' ({kind.value}) missing required params: {', '.join(missing)}"
        )
    unknown = sorted(params.keys() - schema.recognized)
    if unknown:
        raise ConfigError(
            f"Resource '{name}' ({kind.value}) has unrecognized params: {', '.join(unknown)}. "
            f"Recognized: {', '.join(sorted(schema.recognized))}"
        )


def _require_mapping(section: str, value: Any) -> None:
    if not isinstance(value, dict):
        raise ConfigError(f"{section} must be a mapping")


def _setting(key: str, value: Any, convert: Callable[[Any], Any] = float) -> Any:
    """Convert a numeric setting, reporting bad values as ConfigError."""
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be a number, got {value!r}")
    try:
        return convert(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be a number, got {value!r}") from e


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient provider errors.

    Attributes:
        max_attempts: Total provider calls per transition (first try included)
        base_delay: Delay in seconds before the second attempt
        multiplier: Growth factor per attempt
        max_delay: Upper bound for a single delay
    """
    max_attempts: int = 5
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before the attempt following `attempt` (1-based)."""
        backoff = min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))
        if retry_after is not None:
            return max(backoff, min(retry_after, self.max_delay))
        return backoff

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RetryPolicy':
        if not data:
            return cls()
        _require_mapping('settings.retry', data)
        policy = cls(
            max_attempts=_setting('settings.retry.max_attempts', data.get('max_attempts', 5), int),
            base_delay=_setting('settings.retry.base_delay', data.get('base_delay', 2.0)),
            multiplier=_setting('settings.retry.multiplier', data.get('multiplier', 2.0)),
            max_delay=_setting('settings.retry.max_delay', data.get('max_delay', 60.0)),
        )
        if policy.max_attempts < 1:
            raise ConfigError("settings.retry.max_attempts must be at least 1")
        return policy


@dataclass
class ReadinessPolicy:
    """Validator polling policy.

    Attributes:
        interval: Seconds between describe calls
        timeout: Default deadline in seconds
        timeouts: Per-kind deadline overrides (kind value → seconds)
    """
    interval: float = 5.0
    timeout: float = 300.0
    timeouts: dict = field(default_factory=dict)

    def timeout_for(self, kind: str) -> float:
        return float(self.timeouts.get(kind, self.timeout))

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'ReadinessPolicy':
        if not data:
            return cls()
        _require_mapping('settings.readiness', data)
        timeouts = data.get('timeouts') or {}
        _require_mapping('settings.readiness.timeouts', timeouts)
        for kind in timeouts:
            if kind not in {k.value for k in ResourceKind}:
                raise ConfigError(f"settings.readiness.timeouts has unknown kind '{kind}'")
        return cls(
            interval=_setting('settings.readiness.interval', data.get('interval', 5.0)),
            timeout=_setting('settings.readiness.timeout', data.get('timeout', 300.0)),
            timeouts={
                k: _setting(f'settings.readiness.timeouts.{k}', v) for k, v in timeouts.items()
            },
        )


@dataclass
class DeploymentSettings:
    """Optional settings for manifest execution.

    Attributes:
        max_workers: Concurrent provider operations (default: 4)
        retry: Backoff policy for transient provider errors
        readiness: Validator polling policy
        run_timeout: Seconds after which no new resources are started (None = no limit)
        validate: Run the validator after deploy (default: True)
        prune: Delete resources recorded in state but absent from the manifest (default: False)
    """
    max_workers: int = 4
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    readiness: ReadinessPolicy = field(default_factory=ReadinessPolicy)
    run_timeout: Optional[float] = None
    validate: bool = True
    prune: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'DeploymentSettings':
        """Create DeploymentSettings from dictionary."""
        if not data:
            return cls()
        _require_mapping('settings', data)
        max_workers = _setting('settings.max_workers', data.get('max_workers', 4), int)
        if max_workers < 1:
            raise ConfigError("settings.max_workers must be at least 1")
        run_timeout = data.get('run_timeout')
        return cls(
            max_workers=max_workers,
            retry=RetryPolicy.from_dict(data.get('retry')),
            readiness=ReadinessPolicy.from_dict(data.get('readiness')),
            run_timeout=_setting('settings.run_timeout', run_timeout) if run_timeout is not None else None,
            validate=bool(data.get('validate', True)),
            prune=bool(data.get('prune', False)),
        )

    def to_dict(self) -> dict:
        return {
            'max_workers': self.max_workers,
            'retry': {
                'max_attempts': self.retry.max_attempts,
                'base_delay': self.retry.base_delay,
                'multiplier': self.retry.multiplier,
                'max_delay': self.retry.max_delay,
            },
            'readiness': {
                'interval': self.readiness.interval,
                'timeout': self.readiness.timeout,
                'timeouts': dict(self.readiness.timeouts),
            },
            'run_timeout': self.run_timeout,
            'validate': self.validate,
            'prune': self.prune,
        }


@dataclass
class Manifest:
    """Desired-state document for one deployment.

    Attributes:
        name: Deployment identifier (keys the persisted state)
        resources: Resource specs in declaration order
        description: Optional description
        settings: Execution settings
        source_path: Path where manifest was loaded from (for debugging)
    """
    name: str
    resources: list[ResourceSpec]
    description: str = ''
    settings: DeploymentSettings = field(default_factory=DeploymentSettings)
    source_path: Optional[Path] = None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'description': self.description,
            'resources': [r.to_dict() for r in self.resources],
            'settings': self.settings.to_dict(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Manifest':
        """Create Manifest from dictionary.

        Graph-level checks (unknown dependencies, cycles) are left to
        deploy_opr.graph.build().

        Raises:
            ConfigError: If manifest is invalid
        """
        if 'name' not in data:
            raise ConfigError("Manifest missing required field: name")
        name = str(data['name'])
        if not DEPLOYMENT_NAME_PATTERN.match(name):
            raise ConfigError(f"Invalid manifest name '{name}'")

        if 'resources' not in data:
            raise ConfigError("Manifest missing required field: resources")
        if not isinstance(data['resources'], list):
            raise ConfigError("Manifest resources must be a list")

        resources = [
            ResourceSpec.from_dict(entry, i) for i, entry in enumerate(data['resources'])
        ]

        return cls(
            name=name,
            resources=resources,
            description=data.get('description', '') or '',
            settings=DeploymentSettings.from_dict(data.get('settings')),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Manifest':
        """Create Manifest from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid manifest JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError("Manifest JSON must be an object")
        return cls.from_dict(data)


class ManifestLoader:
    """Loads manifests from site-config/manifests/ directory."""

    def __init__(self, site_config_path: Optional[str] = None):
        if site_config_path:
            self.site_config_dir = Path(site_config_path)
        else:
            self.site_config_dir = get_site_config_dir()

        self.manifests_dir = self.site_config_dir / 'manifests'

    def list_manifests(self) -> list[str]:
        """List available manifest names."""
        if not self.manifests_dir.exists():
            return []
        return sorted([
            f.stem for f in self.manifests_dir.glob('*.yaml')
            if f.is_file()
        ])

    def load(self, name: str) -> Manifest:
        """Load manifest by name.

        Raises:
            ConfigError: If manifest not found or invalid
        """
        path = self.manifests_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_manifests()
            raise ConfigError(
                f"Manifest '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )

        return self.load_file(path)

    @staticmethod
    def load_file(path: Path) -> Manifest:
        """Load manifest from a YAML or JSON file.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Manifest file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in manifest {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Manifest {path} must be a YAML object (dict)")

        logger.debug(f"Loaded manifest from {path}")
        return Manifest.from_dict(data, source_path=path)


def load_manifest(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> Manifest:
    """Load manifest from various sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path (YAML or JSON)
    3. name - Named manifest from site-config/manifests/

    Raises:
        ConfigError: If no source given, or manifest not found or invalid
    """
    if json_str:
        return Manifest.from_json(json_str)
    if file_path:
        return ManifestLoader.load_file(Path(file_path))
    if name:
        return ManifestLoader().load(name)
    raise ConfigError("No manifest source given")
