"""Provider contract and registry.

A provider implements create/update/destroy/read for one resource type.
The engine never branches on concrete resource types: everything it knows
about a type comes from the provider's ResourceSchema.

Providers are called from worker threads and must not share unguarded
mutable state between calls.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from common import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSchema:
    """Attribute contract for a resource type.

    Attributes:
        type_name: Resource type served (e.g. 'local_file')
        required: Attributes every declaration must set
        optional: Attributes a declaration may set
        outputs: Attributes the provider assigns on create/update
        force_new: Attributes whose change requires replacement
        allow_extra: Accept attributes not listed in required/optional
        replace_on_any_change: Every attribute change requires replacement
    """
    type_name: str
    required: tuple = ()
    optional: tuple = ()
    outputs: tuple = ('id',)
    force_new: tuple = ()
    allow_extra: bool = False
    replace_on_any_change: bool = False

    def validate(self, attributes: dict, address: str) -> list[str]:
        """Check declared attribute keys.

        Returns:
            List of error messages (empty = valid)
        """
        errors = []
        for key in self.required:
            if key not in attributes:
                errors.append(f"'{address}' missing required attribute '{key}'")
        if not self.allow_extra:
            known = set(self.required) | set(self.optional)
            for key in attributes:
                if key not in known:
                    errors.append(f"'{address}' has unknown attribute '{key}' for type '{self.type_name}'")
        return errors

    def requires_replace(self, changed: list[str]) -> bool:
        """True if changing these attributes cannot be done in place."""
        if self.replace_on_any_change:
            return bool(changed)
        return any(key in self.force_new for key in changed)

    def has_attribute(self, name: str) -> bool:
        """True if name is an input or output of this type."""
        if self.allow_extra:
            return True
        return name in self.required or name in self.optional or name in self.outputs


@runtime_checkable
class Provider(Protocol):
    """Protocol for resource providers.

    Failures are reported by raising common.ProviderError.
    """
    schema: ResourceSchema

    def create(self, attrs: dict) -> dict:
        """Create the resource and return its provider state."""

    def update(self, attrs: dict, state: dict) -> dict:
        """Update the resource in place and return its new provider state."""

    def destroy(self, state: dict) -> None:
        """Destroy the resource."""

    def read(self, state: dict) -> Optional[dict]:
        """Return the actual provider state, or None if the resource is gone."""


class ProviderRegistry:
    """Maps resource type names to providers."""

    def __init__(self, providers: Optional[list] = None):
        self._providers: dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        """Register a provider under its schema's type name.

        Raises:
            ValueError: If the type is already registered
        """
        name = provider.schema.type_name
        if name in self._providers:
            raise ValueError(f"Provider for type '{name}' already registered")
        self._providers[name] = provider
        logger.debug(f"Registered provider for '{name}': {type(provider).__name__}")

    def get(self, type_name: str) -> Provider:
        """Get the provider for a type.

        Raises:
            ValidationError: If no provider serves the type
        """
        try:
            return self._providers[type_name]
        except KeyError:
            available = ', '.join(sorted(self._providers)) or 'none'
            raise ValidationError(
                f"No provider for resource type '{type_name}'. Available: {available}"
            )

    def has(self, type_name: str) -> bool:
        return type_name in self._providers

    def schema(self, type_name: str) -> ResourceSchema:
        return self.get(type_name).schema

    @property
    def types(self) -> list[str]:
        return sorted(self._providers)
