import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from crm_api.database import get_db
from crm_api.main import app
from crm_api.middleware.auth import get_current_user

ORG_ID = "a0000000-0000-0000-0000-000000000001"


@pytest.fixture
def db_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def current_user() -> dict:
    """Claims for the calling user; tests mutate role/role_level as needed."""
    return {
        "user_id": str(uuid.uuid4()),
        "organization_id": ORG_ID,
        "role": "sales-executive",
        "email": "exec@estate.example",
        "role_level": None,
    }


@pytest.fixture
async def client(db_session, current_user):
    async def _db():
        yield db_session

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_current_user] = lambda: current_user
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    # Identity is injected through the overridden dependency
    return {"Authorization": "Bearer test-token"}
