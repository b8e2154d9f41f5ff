"""API-specific test fixtures."""

from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from app.core.auth import Principal, require_auth


class PrincipalSwitch:
    """Stands in for require_auth; tests flip ``current`` to act as someone else."""

    def __init__(self, principal: Principal | None):
        self.current = principal

    async def __call__(self) -> Principal:
        if self.current is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return self.current


@pytest.fixture
def acting_as(verified_principal) -> PrincipalSwitch:
    return PrincipalSwitch(verified_principal)


@pytest.fixture
def api_client(tmp_path, gateway, acting_as):
    """FastAPI test client on a temp SQLite database.

    Initializes the global database via init_db inside the TestClient's
    own event loop so route handlers can use get_session_factory().
    The gateway is the in-memory fake and auth is the PrincipalSwitch.
    """
    from app.api.deps import get_gateway
    from app.api.routes import api_router, webhooks_router
    from app.core.config import get_settings
    from app.db import close_db, init_db
    from app.main import generic_exception_handler, http_exception_handler

    db_url = f"sqlite+aiosqlite:///{tmp_path / 'api.db'}"

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        """Test lifespan - initialize DB in TestClient's event loop."""
        import app.db.base as db_mod

        db_mod._engine = None
        db_mod._session_factory = None
        await init_db(db_url)
        yield
        await close_db()

    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="FakeLive API - Test Client",
        version="1.0.0",
        lifespan=test_lifespan,
    )

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")
    app.include_router(webhooks_router)

    app.dependency_overrides[require_auth] = acting_as
    app.dependency_overrides[get_gateway] = lambda: gateway

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
