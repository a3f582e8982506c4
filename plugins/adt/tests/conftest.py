"""
Shared fixtures for ADT plugin tests.
"""

import pytest

from config.types import AdtConnectionConfig
from ..lock_registry import LockRegistry
from ..session import AdtConnection, ConnectionProvider, SessionContext
from ..types import ObjectDescriptor, SessionState
from .helpers import FakeAdtBackend, FakeObjectAdapter


@pytest.fixture
def descriptor():
    return ObjectDescriptor(
        kind="class",
        name="zcl_test",
        package_name="$TMP",
        description="Test class",
    )


@pytest.fixture
def fake_adapter():
    return FakeObjectAdapter()


@pytest.fixture
def session_ctx():
    """A session context that already carries a started session."""
    ctx = SessionContext()
    ctx.restore(SessionState(session_id="session-1", csrf_token="TOKEN"))
    return ctx


@pytest.fixture
def lock_registry(tmp_path):
    return LockRegistry(path=str(tmp_path / "active-locks.json"), enabled=True)


@pytest.fixture
def adt_config():
    return AdtConnectionConfig(
        url="https://adt.example.com/",
        user="developer",
        password="secret",
        client="100",
    )


@pytest.fixture
def backend():
    return FakeAdtBackend()


@pytest.fixture
def connection(adt_config, backend):
    return AdtConnection(adt_config, backend)


@pytest.fixture
def provider_factory(adt_config, backend):
    """Connection provider factory that routes every request to the fake backend."""

    def factory():
        return ConnectionProvider(adt_config, http_client_factory=lambda config: backend)

    return factory
