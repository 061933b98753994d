"""In-memory provider for dry runs, local previews and tests.

Nothing leaves the process. Each materialization fabricates a deterministic
resource id, access keys and typical endpoint properties, echoes the request
back, and merges any canned attributes configured for the resource type.
"""

import copy
import hashlib
import logging
from typing import Optional

from common import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = '/subscriptions/00000000-0000-0000-0000-000000000000/resourceGroups/local'

# Simulated runtime properties per resource type; '{name}' is the leaf resource name
SIMULATED_PROPERTIES = {
    'Microsoft.Storage/storageAccounts': {
        'primaryEndpoints': {
            'blob': 'https://{name}.blob.core.windows.net/',
            'web': 'https://{name}.z13.web.core.windows.net/',
        },
    },
    'Microsoft.KeyVault/vaults': {'vaultUri': 'https://{name}.vault.azure.net/'},
    'Microsoft.Web/sites': {'defaultHostName': '{name}.azurewebsites.net'},
    'Microsoft.Web/staticSites': {'defaultHostname': '{name}.azurestaticapps.net'},
    'Microsoft.Sql/servers': {'fullyQualifiedDomainName': '{name}.database.windows.net'},
}


class InMemoryProvider:
    """Simulated provider.

    Args:
        attributes: Extra runtime attributes per resource type, merged into
            every response for that type (e.g. primaryEndpoints for storage)
        fail_on: Resource names or types whose materialization raises
            ProviderError
        scope: Resource id prefix
    """

    name = 'memory'

    def __init__(
        self,
        attributes: Optional[dict[str, dict]] = None,
        fail_on: Optional[set[str]] = None,
        scope: str = DEFAULT_SCOPE,
    ):
        self.attributes = attributes or {}
        self.fail_on = set(fail_on or ())
        self.scope = scope
        self.calls: list[tuple[str, str, dict]] = []
        self.resources: dict[str, dict] = {}

    def _resource_id(self, resource_type: str, name: str) -> str:
        namespace, _, types = resource_type.partition('/')
        type_parts = types.split('/')
        name_parts = name.split('/')
        segments = [f'{t}/{n}' for t, n in zip(type_parts, name_parts)]
        return f"{self.scope}/providers/{namespace}/{'/'.join(segments)}"

    @staticmethod
    def _keys(resource_id: str) -> list[dict]:
        return [
            {
                'keyName': f'key{i}',
                'value': hashlib.sha256(f'{resource_id}#{i}'.encode('utf-8')).hexdigest(),
            }
            for i in (1, 2)
        ]

    def materialize(self, resource_type: str, api_version: str, properties: dict) -> dict:
        name = properties.get('name', '')
        self.calls.append((resource_type, api_version, copy.deepcopy(properties)))

        if name in self.fail_on or resource_type in self.fail_on:
            raise ProviderError(f"simulated failure creating {resource_type}", resource=name)

        resource_id = self._resource_id(resource_type, name)
        attrs = copy.deepcopy(properties)
        attrs.update({
            'id': resource_id,
            'type': resource_type,
            'apiVersion': api_version,
            'keys': self._keys(resource_id),
        })
        simulated = _simulated_properties(resource_type, name.rsplit('/', 1)[-1])
        if simulated:
            props = attrs.get('properties')
            attrs['properties'] = {**simulated, **props} if isinstance(props, dict) else simulated
        extra = copy.deepcopy(self.attributes.get(resource_type, {}))
        if isinstance(extra.get('properties'), dict) and isinstance(attrs.get('properties'), dict):
            attrs['properties'].update(extra.pop('properties'))
        attrs.update(extra)

        self.resources[resource_id] = attrs
        logger.debug(f"[memory] Materialized {resource_type} '{name}' as {resource_id}")
        return attrs


def _simulated_properties(resource_type: str, name: str) -> dict:
    def fill(value):
        if isinstance(value, dict):
            return {k: fill(v) for k, v in value.items()}
        return value.format(name=name)

    return fill(SIMULATED_PROPERTIES.get(resource_type, {}))
