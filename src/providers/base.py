"""Provider capability interface."""

from typing import Any, Protocol, runtime_checkable

from common import ProviderError


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider classes that materialize resources.

    Implementations create or update one resource per call and return its
    runtime attributes (generated ids, keys, endpoints). Failures are
    raised as ProviderError.
    """
    name: str

    def materialize(self, resource_type: str, api_version: str, properties: dict) -> dict:
        """Create or update a resource and return its runtime attributes."""


def check_attributes(result: Any, resource_type: str, name: str) -> dict:
    """Validate a provider response shape.

    Raises:
        ProviderError: If the provider returned something other than a mapping
    """
    if not isinstance(result, dict):
        raise ProviderError(
            f"provider returned {type(result).__name__} for {resource_type}, expected an object",
            resource=name)
    return result
