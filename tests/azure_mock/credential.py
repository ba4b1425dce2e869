"""Mock Azure credential.

Stands in for DefaultAzureCredential. The mock client never asks it for a
token, so it only records how it was built.
"""

from __future__ import annotations

from typing import Any


class MockDefaultAzureCredential:
    """Mock implementation of DefaultAzureCredential."""

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
