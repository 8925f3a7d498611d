"""Azure mocks for testing without Azure connectivity.

Two layers are provided:

- MockNetworkProvider: an in-memory Provider for engine, output and
  validator tests, with call recording, error injection and
  accepted-then-polled operations.
- MockNetworkClient / MockResourceClient: stand-ins for the Azure SDK
  clients behind AzureNetworkProvider, patched in by MockAzureContext.

Usage:
    from azure_mock import MockNetworkProvider

    provider = MockNetworkProvider()
    result = await ConvergenceEngine(provider, config).apply(graph)
    assert provider.create_count == len(graph)
"""

from .context import MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .network import MockLROPoller, MockNetworkClient, MockOperations, MockResourceClient
from .provider import MockCall, MockNetworkProvider, mock_resource_id

__all__ = [
    "MockAzureContext",
    "MockCall",
    "MockLROPoller",
    "MockManagedIdentityCredential",
    "MockNetworkClient",
    "MockNetworkProvider",
    "MockOperations",
    "MockResourceClient",
    "create_mock_credential",
    "mock_resource_id",
]
