"""Azure API Mock for testing.

In-memory implementation of the Azure Resource Manager generic resources and
tags APIs, so resource lifecycle code runs without Azure connectivity.

Key Features:
- In-memory state management for resources
- Scripted provisioning state transitions, one per read
- Eventually consistent reads after create
- Error injection for reads and tag patches

Usage:
    from azure_mock import MockResourceClient, MockResourceState

    state = MockResourceState()
    client = MockResourceClient(state, subscription_id)
    handler = ResourceHandler(client, config, poller=poller)
"""

from .context import MockAzureContext
from .credential import MockDefaultAzureCredential
from .resources import MockGenericResource, MockResource, MockResourceClient, MockResourceState

__all__ = [
    "MockAzureContext",
    "MockDefaultAzureCredential",
    "MockGenericResource",
    "MockResource",
    "MockResourceClient",
    "MockResourceState",
]
