"""API-specific test fixtures."""

from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient


@pytest.fixture
def api_client(db_url, db_engine):
    """FastAPI test client backed by the per-test SQLite file.

    Initializes the global database via init_db inside the TestClient's
    own event loop so the webhook processor gets a session factory bound
    to that loop. db_engine creates the tables first; tests seed accounts
    through it from the pytest-asyncio loop.
    """
    from fastapi import HTTPException

    from app.api.routes import api_router
    from app.core.config import get_settings
    from app.db import close_db, get_session_factory, init_db
    from app.main import generic_exception_handler, http_exception_handler
    from app.middleware.correlation import setup_correlation_middleware
    from app.services.account_store import build_account_store
    from app.services.webhook_processor import build_webhook_processor

    @asynccontextmanager
    async def test_lifespan(app: FastAPI):
        """Test lifespan - initialize DB in TestClient's event loop."""
        # Reset global so init_db creates a fresh engine in THIS loop
        import app.db.base as db_mod

        db_mod._engine = None
        db_mod._session_factory = None
        await init_db(db_url)
        app.state.account_store = build_account_store(get_settings(), get_session_factory())
        app.state.webhook_processor = build_webhook_processor(
            get_settings(), get_session_factory(), store=app.state.account_store
        )
        yield
        app.state.webhook_processor = None
        app.state.account_store = None
        await close_db()

    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Stripe Subscription Sync - Test Client",
        version="0.1.0",
        lifespan=test_lifespan,
    )

    setup_correlation_middleware(app)

    # Exception handlers (needed for debug_id testing)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")

    with TestClient(app) as client:
        yield client
