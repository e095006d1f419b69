"""Resource providers and the registry that maps types to them."""

import logging
from pathlib import Path
from typing import Optional

from common import ValidationError
from providers.base import Provider, ProviderRegistry, ResourceSchema
from providers.rest import HttpProvider
from providers.local import LocalFileProvider
from providers.null import NullProvider

logger = logging.getLogger(__name__)

# Provider setting blocks accepted in declarations and the keys each accepts
PROVIDER_SETTINGS = {
    'null': set(),
    'local': {'root_dir'},
    'http': {'base_url', 'timeout', 'headers', 'verify'},
}


def build_registry(settings: Optional[dict] = None, work_dir: Optional[Path] = None) -> ProviderRegistry:
    """Build a registry of the built-in providers.

    Args:
        settings: The declarations' providers: block
        work_dir: Base directory for relative paths (default: cwd)

    Raises:
        ValidationError: On unknown provider blocks or settings
    """
    settings = settings or {}
    work_dir = Path(work_dir) if work_dir else Path.cwd()

    for name, values in settings.items():
        if name not in PROVIDER_SETTINGS:
            raise ValidationError(
                f"Unknown provider '{name}'. Available: {', '.join(sorted(PROVIDER_SETTINGS))}"
            )
        unknown = set(values) - PROVIDER_SETTINGS[name]
        if unknown:
            raise ValidationError(f"Unknown settings for provider '{name}': {', '.join(sorted(unknown))}")

    registry = ProviderRegistry()
    registry.register(NullProvider())

    root_dir = Path(settings.get('local', {}).get('root_dir', '.'))
    if not root_dir.is_absolute():
        root_dir = work_dir / root_dir
    registry.register(LocalFileProvider(root_dir=root_dir))

    http = settings.get('http', {})
    if http:
        if 'base_url' not in http:
            raise ValidationError("Provider 'http' requires base_url")
        registry.register(HttpProvider(
            base_url=http['base_url'],
            timeout=http.get('timeout', 10),
            headers=http.get('headers'),
            verify=http.get('verify', True),
        ))
    return registry


__all__ = [
    'Provider',
    'ProviderRegistry',
    'ResourceSchema',
    'NullProvider',
    'LocalFileProvider',
    'HttpProvider',
    'build_registry',
]
