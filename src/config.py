"""Target configuration management.

Configuration is loaded from site-config YAML files:
- site.yaml: Site-wide defaults (provider, region, state_dir, ...)
- secrets.yaml: Provider tokens (decrypted), keyed by target name
- targets/*.yaml: Per-environment provider configuration
- manifests/*.yaml: Desired-state documents (see manifest.py)

The merge order is: site defaults → target, with the provider token resolved
by key reference from secrets.yaml or from an environment variable.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# Provider plugins known to providers.get_provider()
SUPPORTED_PROVIDERS = ('rest', 'local')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class TargetConfig:
    """Configuration for a target environment.

    A target names one provider endpoint (one account/region pair) that a
    deployment is applied to. When config_file does not exist the dataclass
    defaults are used, which makes ad-hoc targets (tests, rehearsals) cheap.
    """
    name: str
    config_file: Path
    provider: str = 'local'
    endpoint: str = ''
    region: str = ''
    request_timeout: float = 30.0
    verify_tls: bool = True
    token_env: str = 'IAC_PROVIDER_TOKEN'
    state_dir: Path = field(default_factory=lambda: get_base_dir() / '.states')

    # Provider token (resolved from secrets.yaml or token_env at load time)
    _token: str = field(default='', init=False, repr=False)

    def __post_init__(self):
        if isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)

        if self.config_file.is_file():
            self._load_from_yaml()

        if self.provider not in SUPPORTED_PROVIDERS:
            raise ConfigError(
                f"Target '{self.name}' uses unknown provider '{self.provider}'. "
                f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        if self.provider == 'rest' and not self.endpoint:
            raise ConfigError(f"Target '{self.name}' uses the rest provider but has no endpoint")

    def _load_from_yaml(self):
        """Load configuration from YAML file with secrets resolution."""
        site_config_dir = self.config_file.parent.parent

        site_defaults = {}
        site_file = site_config_dir / 'site.yaml'
        if site_file.exists():
            site_defaults = _parse_yaml(site_file).get('defaults', {}) or {}

        target_config = _parse_yaml(self.config_file)

        # site → target
        merged = {**site_defaults, **target_config}

        self.provider = merged.get('provider', self.provider)
        self.endpoint = str(merged.get('endpoint', self.endpoint)).rstrip('/')
        self.region = merged.get('region', self.region)
        self.token_env = merged.get('token_env', self.token_env)

        try:
            self.request_timeout = float(merged.get('request_timeout', self.request_timeout))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{self.config_file}: request_timeout must be a number") from e

        if 'verify_tls' in merged:
            self.verify_tls = bool(merged['verify_tls'])

        if state_dir := merged.get('state_dir'):
            path = Path(state_dir)
            # Relative state dirs are anchored at the site-config directory
            self.state_dir = path if path.is_absolute() else site_config_dir / path

        secrets = _load_secrets(site_config_dir)
        token_key = target_config.get('token', self.name)
        if secrets and 'provider_tokens' in secrets:
            self._token = secrets['provider_tokens'].get(token_key, '') or ''

    def get_token(self) -> str:
        """Get provider token: secrets.yaml first, then the token_env variable."""
        if self._token:
            return self._token
        return os.environ.get(self.token_env, '')

    def set_token(self, token: str) -> None:
        self._token = token


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def _load_secrets(site_config_dir: Path) -> Optional[dict]:
    """Load decrypted secrets from secrets.yaml (None if absent)."""
    secrets_file = site_config_dir / 'secrets.yaml'
    if not secrets_file.exists():
        return None
    return _parse_yaml(secrets_file)


def get_base_dir() -> Path:
    """Get the iac-orchestrator directory."""
    return Path(__file__).parent.parent  # src/ -> iac-orchestrator/


def get_site_config_dir() -> Path:
    """Discover site-config directory.

    Resolution order:
    1. $IAC_CONFIG_DIR environment variable
    2. ../site-config/ sibling directory (dev workspace)
    3. /usr/local/etc/iac-orchestrator/ (FHS install)
    """
    if env_path := os.environ.get('IAC_CONFIG_DIR'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"IAC_CONFIG_DIR={env_path} does not exist")

    sibling = get_base_dir().parent / 'site-config'
    if sibling.exists():
        return sibling

    fhs_path = Path('/usr/local/etc/iac-orchestrator')
    if fhs_path.exists():
        return fhs_path

    raise ConfigError(
        "site-config not found. "
        "Set IAC_CONFIG_DIR or create a site-config sibling directory."
    )


def list_targets() -> list[str]:
    """List available targets from site-config/targets/."""
    try:
        site_config = get_site_config_dir()
    except ConfigError:
        return []

    targets_dir = site_config / 'targets'
    if not targets_dir.exists():
        return []
    return sorted(f.stem for f in targets_dir.glob('*.yaml') if f.is_file())


def load_target_config(target: str) -> TargetConfig:
    """Load configuration for a named target.

    Raises:
        ConfigError: If the target has no targets/{target}.yaml
    """
    site_config = get_site_config_dir()
    target_file = site_config / 'targets' / f'{target}.yaml'
    if not target_file.exists():
        available = list_targets()
        raise ConfigError(
            f"Target '{target}' not found at {target_file}. "
            f"Available: {', '.join(available) if available else 'none configured'}"
        )
    return TargetConfig(name=target, config_file=target_file)
