"""HTTP provider: delegates materialization to a remote endpoint.

Request:
    POST {endpoint}/materialize
    {"type": "...", "apiVersion": "...", "properties": {...}}

Response (2xx): JSON object of runtime attributes.
Error responses may carry {"error": {"code": "...", "message": "..."}}.
"""

import logging
from typing import Optional

import requests

from common import ProviderError
from providers.base import check_attributes

logger = logging.getLogger(__name__)


class HttpProvider:
    """Provider backed by a remote materialization service."""

    name = 'http'

    def __init__(
        self,
        endpoint: str,
        token: Optional[str] = None,
        timeout: int = 60,
        verify: bool = True,
        session: Optional[requests.Session] = None,
    ):
        """Initialize the HTTP provider.

        Args:
            endpoint: Base URL (e.g., https://provisioner.internal:8443)
            token: Bearer token, sent as Authorization header when set
            timeout: Request timeout in seconds
            verify: Verify TLS certificates
            session: Optional pre-configured requests session
        """
        if not endpoint:
            raise ProviderError("http provider requires an endpoint")
        self.endpoint = endpoint.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.verify = verify
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        """Extract a message from an error response body."""
        try:
            body = resp.json()
        except ValueError:
            body = None
        error = body.get('error') if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get('message'):
            code = error.get('code', resp.status_code)
            return f"{code}: {error['message']}"
        return f"HTTP {resp.status_code}: {resp.text[:200]}"

    def materialize(self, resource_type: str, api_version: str, properties: dict) -> dict:
        name = properties.get('name', '')
        url = f'{self.endpoint}/materialize'
        payload = {'type': resource_type, 'apiVersion': api_version, 'properties': properties}
        logger.debug(f"[http] POST {url} for {resource_type} '{name}'")

        try:
            resp = self.session.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.exceptions.Timeout:
            raise ProviderError(f"timeout after {self.timeout}s calling {url}", resource=name)
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"cannot connect to {self.endpoint}: {e}", resource=name)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"request to {url} failed: {e}", resource=name)

        if resp.status_code == 401:
            raise ProviderError("unauthorized (check provider_token)", resource=name, status_code=401)
        if resp.status_code >= 400:
            raise ProviderError(self._error_message(resp), resource=name, status_code=resp.status_code)

        try:
            body = resp.json()
        except ValueError as e:
            raise ProviderError(f"invalid JSON response: {e}", resource=name,
                                status_code=resp.status_code)
        return check_attributes(body, resource_type, name)
