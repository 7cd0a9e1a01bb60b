"""Pytest configuration and shared fixtures for the test suite."""

from typing import AsyncGenerator, Optional, Union
from urllib.parse import parse_qs

import httpx
import pytest

from credbroker.config import BrokerSettings
from credbroker.integrations.credentials.encryption import CipherVault
from credbroker.integrations.credentials.secret_store import InMemorySecretStore
from credbroker.integrations.credentials.store import CredentialStore
from credbroker.integrations.oauth.registry import ProviderRegistry
from credbroker.storage.database import Database, DatabaseConfig

# Configure pytest-asyncio to use auto mode
pytest_plugins = ["pytest_asyncio"]

GOOGLE_CLIENT_ID = "1234-abcdef.apps.googleusercontent.com"


class StubProvider:
    """Stands in for provider HTTP endpoints.

    Records every request and answers with queued responses in order.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._responses: list[Union[httpx.Response, str]] = []

    def reply(
        self,
        status_code: int = 200,
        json: Optional[object] = None,
        content: Optional[bytes] = None,
    ) -> "StubProvider":
        if content is not None:
            self._responses.append(httpx.Response(status_code, content=content))
        else:
            self._responses.append(httpx.Response(status_code, json=json))
        return self

    def fail_connection(self) -> "StubProvider":
        self._responses.append("connect_error")
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._responses:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        response = self._responses.pop(0)
        if isinstance(response, str):
            raise httpx.ConnectError("connection refused", request=request)
        return response  # type: ignore[return-value]

    def form(self, index: int = -1) -> dict[str, str]:
        """Decode a recorded form-urlencoded body."""
        body = parse_qs(self.requests[index].content.decode())
        return {key: values[0] for key, values in body.items()}


@pytest.fixture
def stub_provider() -> StubProvider:
    return StubProvider()


@pytest.fixture
async def http_client(stub_provider: StubProvider) -> AsyncGenerator[httpx.AsyncClient, None]:
    """AsyncClient whose requests are answered by ``stub_provider``."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub_provider.handler))
    yield client
    await client.aclose()


@pytest.fixture
async def db() -> AsyncGenerator[Database, None]:
    """Create an in-memory SQLite database for testing."""
    database = Database(DatabaseConfig(url="sqlite+aiosqlite:///:memory:"))
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def vault(secret_store: InMemorySecretStore) -> CipherVault:
    return CipherVault.open(secret_store)


@pytest.fixture
def store(db: Database, vault: CipherVault) -> CredentialStore:
    return CredentialStore(db, vault)


@pytest.fixture
def settings() -> BrokerSettings:
    """Settings with usable Google and Microsoft clients."""
    return BrokerSettings(
        google_client_id=GOOGLE_CLIENT_ID,
        microsoft_client_id="ms-client-id",
        microsoft_client_secret="ms-client-secret",
        callback_scheme="credbroker",
        database_url="sqlite+aiosqlite:///:memory:",
    )


@pytest.fixture
def registry(settings: BrokerSettings) -> ProviderRegistry:
    return ProviderRegistry(settings)
