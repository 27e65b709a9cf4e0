"""Provider collaborator interface.

The engine talks to exactly one provider per target through this protocol.
Every provider error is treated as transient unless it is explicitly
classified permanent (invalid parameter, authorization denied, not found).
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, runtime_checkable


class ProviderError(Exception):
    """Error returned by a provider call.

    Unclassified provider errors are retried like transient ones.
    """

    transient = True

    def __init__(self, message: str, code: str = ''):
        self.message = message
        self.code = code
        super().__init__(f"{code}: {message}" if code else message)


class TransientProviderError(ProviderError):
    """Throttling, timeouts, 5xx: safe to retry.

    Attributes:
        retry_after: Provider-suggested delay in seconds, if any
    """

    transient = True

    def __init__(self, message: str, code: str = '', retry_after: Optional[float] = None):
        super().__init__(message, code)
        self.retry_after = retry_after


class PermanentProviderError(ProviderError):
    """Invalid parameters, authorization denied, conflicts: never retried."""

    transient = False


class ResourceNotFoundError(PermanentProviderError):
    """The provider has no resource with the given id."""


@dataclass
class ProviderStatus:
    """Provider-side view of a resource.

    Attributes:
        state: Lifecycle state reported by the provider (e.g. 'available', 'running')
        health: Health check result when the kind has one (e.g. 'passing')
        attributes: Output attributes (cidr, arn, private_ip, ...)
    """
    state: str
    health: Optional[str] = None
    attributes: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> 'ProviderStatus':
        return cls(
            state=str(data.get('state', 'unknown')),
            health=data.get('health'),
            attributes=dict(data.get('attributes') or {}),
        )

    def to_dict(self) -> dict:
        d: dict = {'state': self.state}
        if self.health is not None:
            d['health'] = self.health
        if self.attributes:
            d['attributes'] = dict(self.attributes)
        return d


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider plugins."""

    def create(self, kind: str, params: dict) -> tuple[str, ProviderStatus]:
        """Create a resource; returns (provider_id, status)."""

    def update(self, provider_id: str, params: dict) -> ProviderStatus:
        """Update a resource in place."""

    def describe(self, provider_id: str) -> ProviderStatus:
        """Describe a resource."""

    def delete(self, provider_id: str) -> ProviderStatus:
        """Delete a resource."""
