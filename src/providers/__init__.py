"""Provider plugins for the deployment engine."""

from config import ConfigError, TargetConfig
from providers.base import Provider


def get_provider(config: TargetConfig, deployment: str) -> Provider:
    """Instantiate the provider plugin configured for a target.

    Args:
        config: Target configuration
        deployment: Deployment name (the local provider keeps one file per deployment)
    """
    if config.provider == 'rest':
        from providers.rest import RestProvider
        return RestProvider(
            endpoint=config.endpoint,
            token=config.get_token(),
            region=config.region,
            timeout=config.request_timeout,
            verify_tls=config.verify_tls,
        )
    if config.provider == 'local':
        from providers.local import LocalProvider
        return LocalProvider(path=config.state_dir / deployment / 'local-provider.json')
    raise ConfigError(f"Unknown provider '{config.provider}'")
