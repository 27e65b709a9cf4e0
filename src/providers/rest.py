"""REST provider plugin.

Talks to a provider gateway exposing a uniform resource API:
    POST   {endpoint}/resources          {"kind": ..., "params": {...}}
    PUT    {endpoint}/resources/{id}     {"params": {...}}
    GET    {endpoint}/resources/{id}
    DELETE {endpoint}/resources/{id}

Responses carry {"id": ..., "state": ..., "health": ..., "attributes": {...}}.
Errors carry {"error": {"code": ..., "message": ...}}.

Creates carry an Idempotency-Key header. The key is reused when a create is
retried after a transient failure (e.g. a timeout after the gateway already
accepted the request), so the gateway can return the resource it made
instead of making a second one.
"""

import logging
import threading
import uuid
from typing import Optional

import requests
import urllib3

from manifest import canonical_hash
from providers.base import (
    PermanentProviderError,
    ProviderError,
    ProviderStatus,
    ResourceNotFoundError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
PERMANENT_STATUS_CODES = {400, 401, 403, 405, 409, 410, 422}
IDEMPOTENCY_HEADER = 'Idempotency-Key'


class RestProvider:
    """Provider backed by a REST gateway."""

    def __init__(
        self,
        endpoint: str,
        token: str = '',
        region: str = '',
        timeout: float = 30.0,
        verify_tls: bool = True,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the provider.

        Args:
            endpoint: Gateway base URL (e.g. https://cloud.example.net/v1)
            token: Bearer token (empty for unauthenticated gateways)
            region: Region header sent with every request
            timeout: Per-request timeout in seconds
            verify_tls: Verify the gateway's TLS certificate
            session: Optional preconfigured requests session
        """
        self.endpoint = endpoint.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify_tls
        if not verify_tls:
            # Gateways with self-signed certs
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        self.session.headers.update({'Accept': 'application/json'})
        if token:
            self.session.headers['Authorization'] = f'Bearer {token}'
        if region:
            self.session.headers['X-Region'] = region
        self._local = threading.local()

    def create(self, kind: str, params: dict) -> tuple[str, ProviderStatus]:
        body = {'kind': kind, 'params': params}
        body_hash = canonical_hash(body)
        pending = self._pending_keys()
        key = pending.setdefault(body_hash, uuid.uuid4().hex)
        try:
            data = self._request('POST', '/resources', body, headers={IDEMPOTENCY_HEADER: key})
        except ProviderError as e:
            if not e.transient:
                pending.pop(body_hash, None)
            elif e.code == 'timeout':
                logger.warning(f"Create of {kind} timed out; the gateway may have accepted it. "
                               f"Retries reuse {IDEMPOTENCY_HEADER} {key}")
            raise
        pending.pop(body_hash, None)
        if 'id' not in data:
            raise PermanentProviderError("Create response has no resource id", code='bad_response')
        return str(data['id']), ProviderStatus.from_dict(data)

    def _pending_keys(self) -> dict:
        """Idempotency keys of creates awaiting retry on this worker thread."""
        if not hasattr(self._local, 'create_keys'):
            self._local.create_keys = {}
        return self._local.create_keys

    def update(self, provider_id: str, params: dict) -> ProviderStatus:
        data = self._request('PUT', f'/resources/{provider_id}', {'params': params})
        return ProviderStatus.from_dict(data)

    def describe(self, provider_id: str) -> ProviderStatus:
        data = self._request('GET', f'/resources/{provider_id}')
        return ProviderStatus.from_dict(data)

    def delete(self, provider_id: str) -> ProviderStatus:
        data = self._request('DELETE', f'/resources/{provider_id}')
        if not data:
            return ProviderStatus(state='deleted')
        return ProviderStatus.from_dict(data)

    def _request(self, method: str, path: str, body: Optional[dict] = None,
                 headers: Optional[dict] = None) -> dict:
        """Send a request and map failures onto the provider error taxonomy."""
        url = f'{self.endpoint}{path}'
        logger.debug(f"{method} {url}")
        try:
            resp = self.session.request(method, url, json=body, headers=headers, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(f"Timeout calling {url}", code='timeout') from e
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(f"Cannot connect to {url}: {e}", code='connection') from e
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Request to {url} failed: {e}") from e

        if resp.status_code < 400:
            if resp.status_code == 204 or not resp.content:
                return {}
            try:
                data = resp.json()
            except ValueError as e:
                raise TransientProviderError(
                    f"Invalid JSON from {url}: {resp.text[:100]}", code='bad_response'
                ) from e
            if not isinstance(data, dict):
                raise PermanentProviderError(f"Unexpected response body from {url}", code='bad_response')
            return data

        code, message = _parse_error(resp)
        if resp.status_code == 404:
            raise ResourceNotFoundError(message, code=code or 'not_found')
        if resp.status_code in TRANSIENT_STATUS_CODES:
            raise TransientProviderError(
                message, code=code or str(resp.status_code),
                retry_after=_parse_retry_after(resp.headers.get('Retry-After')),
            )
        if resp.status_code in PERMANENT_STATUS_CODES:
            raise PermanentProviderError(message, code=code or str(resp.status_code))
        raise ProviderError(message, code=code or str(resp.status_code))


def _parse_error(resp: requests.Response) -> tuple[str, str]:
    """Extract (code, message) from an error response."""
    try:
        data = resp.json()
    except ValueError:
        return '', f"HTTP {resp.status_code}: {resp.text[:100]}"
    if not isinstance(data, dict):
        return '', f"HTTP {resp.status_code}"
    error = data.get('error')
    if isinstance(error, str) and error:
        return '', error
    if not isinstance(error, dict):
        return '', f"HTTP {resp.status_code}"
    return str(error.get('code', '')), str(error.get('message') or f"HTTP {resp.status_code}")


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds (HTTP dates are ignored)."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
