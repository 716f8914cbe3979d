import pytest

from sheetgate.app.main import create_app
from sheetgate.app.services.identity import Principal

from tests.support import FakeIdentityProvider


@pytest.fixture
def principal():
    return Principal(id="user-1", email="user-1@example.com", name="User One")


@pytest.fixture
def identity(principal):
    return FakeIdentityProvider({"good-token": principal})


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer good-token"}


@pytest.fixture
def make_app():
    """Build an app around a prebuilt service graph."""

    def _make(services):
        return create_app(services)

    return _make
