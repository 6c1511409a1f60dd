"""Pytest fixtures for EntraAware tests."""

from typing import Callable, List

import httpx
import pytest
from azure.core.credentials import AccessToken

from entra_aware_core import AzureContext, RequestExecutor


class FakeCredential:
    """Credential stub that issues a token per scope and records the scopes asked for."""

    def __init__(self, token: str = "test-token"):
        self.token = token
        self.scopes: List[str] = []

    def get_token(self, *scopes, **kwargs):
        self.scopes.extend(scopes)
        return AccessToken(self.token, 0)


@pytest.fixture
def credential():
    return FakeCredential()


@pytest.fixture
def make_executor(credential) -> Callable[..., RequestExecutor]:
    """Build an executor whose upstream is served by the given request handler."""
    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> RequestExecutor:
        return RequestExecutor(AzureContext(credential), transport=httpx.MockTransport(handler))
    return factory


@pytest.fixture
def recorded():
    """List collecting the requests seen by a handler."""
    return []
