"""Simulated provider for rehearsal runs.

Keeps resources in memory and, when given a path, mirrors them to a JSON
file so a rehearsal deploy can be inspected, re-applied and cleaned up
across process restarts.
"""

import json
import logging
import os
import threading
import uuid
from pathlib import Path
from typing import Optional

from providers.base import (
    PermanentProviderError,
    ProviderStatus,
    ResourceNotFoundError,
)

logger = logging.getLogger(__name__)

ID_PREFIXES = {
    'network': 'net',
    'subnet': 'subnet',
    'gateway': 'gw',
    'route-table': 'rtb',
    'security-rule-set': 'sg',
    'identity-role': 'role',
    'instance-profile': 'iprof',
    'compute-instance': 'i',
}

# Params echoed back as output attributes
ECHOED_PARAMS = ('cidr', 'zone', 'image', 'instance_type')


class LocalProvider:
    """Thread-safe simulated provider."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._resources: dict[str, dict] = {}
        if self.path and self.path.exists():
            with open(self.path, encoding='utf-8') as f:
                self._resources = json.load(f)

    def create(self, kind: str, params: dict) -> tuple[str, ProviderStatus]:
        if kind not in ID_PREFIXES:
            raise PermanentProviderError(f"Unsupported kind '{kind}'", code='invalid_kind')
        provider_id = f'{ID_PREFIXES[kind]}-{uuid.uuid4().hex[:12]}'
        with self._lock:
            self._resources[provider_id] = {'kind': kind, 'params': dict(params)}
            self._save()
        logger.debug(f"[local] created {kind} {provider_id}")
        return provider_id, self._status(provider_id, kind, params)

    def update(self, provider_id: str, params: dict) -> ProviderStatus:
        with self._lock:
            resource = self._get(provider_id)
            resource['params'] = dict(params)
            self._save()
        return self._status(provider_id, resource['kind'], params)

    def describe(self, provider_id: str) -> ProviderStatus:
        with self._lock:
            resource = self._get(provider_id)
        return self._status(provider_id, resource['kind'], resource['params'])

    def delete(self, provider_id: str) -> ProviderStatus:
        with self._lock:
            self._get(provider_id)
            del self._resources[provider_id]
            self._save()
        logger.debug(f"[local] deleted {provider_id}")
        return ProviderStatus(state='deleted')

    @property
    def resource_ids(self) -> list[str]:
        with self._lock:
            return list(self._resources)

    def _get(self, provider_id: str) -> dict:
        if provider_id not in self._resources:
            raise ResourceNotFoundError(f"No resource {provider_id}", code='not_found')
        return self._resources[provider_id]

    def _save(self) -> None:
        """Persist resources (caller holds the lock)."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix('.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(self._resources, f, indent=2)
        os.replace(tmp, self.path)

    @staticmethod
    def _status(provider_id: str, kind: str, params: dict) -> ProviderStatus:
        attributes = {'id': provider_id}
        attributes.update({k: params[k] for k in ECHOED_PARAMS if k in params})
        if kind == 'compute-instance':
            return ProviderStatus(state='running', health='passing', attributes=attributes)
        return ProviderStatus(state='available', attributes=attributes)
