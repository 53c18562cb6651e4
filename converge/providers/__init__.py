from converge.config import Settings
from converge.errors import ConfigError
from converge.providers.base import Provider
from converge.providers.sandbox import SandboxProvider

PROVIDERS = {"sandbox": SandboxProvider}


def build_provider(settings: Settings) -> Provider:
    try:
        factory = PROVIDERS[settings.provider]
    except KeyError:
        raise ConfigError(
            f"unknown provider '{settings.provider}' (available: {', '.join(sorted(PROVIDERS))})"
        )
    return factory(path=settings.provider_path, schema_overrides=settings.schemas)
