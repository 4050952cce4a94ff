"""
Tests for engine options and the request session dependency.
"""
from typing import Any

import pytest
from sqlalchemy import func, select

from database import connection
from database.models import Listing


class TestEngineOptions:
    """Pool settings depend on the database backend."""

    @pytest.mark.unit
    def test_sqlite_has_no_pool_sizing(self) -> None:
        """Test SQLite URLs get only the echo flag."""
        assert connection.engine_options("sqlite+aiosqlite:///:memory:", echo=True) == {
            "echo": True
        }

    @pytest.mark.unit
    def test_postgres_pool(self) -> None:
        """Test Postgres URLs are pooled with pre-ping and recycling."""
        options = connection.engine_options(
            "postgresql+asyncpg://escrow@db/escrow", pool_size=5, max_overflow=10
        )
        assert options["pool_size"] == 5
        assert options["max_overflow"] == 10
        assert options["pool_pre_ping"] is True
        assert options["pool_recycle"] == connection.POOL_RECYCLE_SECONDS


class TestGetDb:
    """Commit and rollback around a request."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_rolls_back_uncommitted_writes(
        self, session_factory: Any, monkeypatch: Any
    ) -> None:
        """Test a route that raises leaves no half-written rows behind."""
        monkeypatch.setattr(connection, "get_session_factory", lambda: session_factory)
        dependency = connection.get_db()
        session = await dependency.__anext__()
        session.add(
            Listing(seller_id="seller-9", brand="Omega", model="Speedmaster", price=500000)
        )
        await session.flush()

        with pytest.raises(RuntimeError):
            await dependency.athrow(RuntimeError("route failed"))

        async with session_factory() as check:
            count = await check.scalar(
                select(func.count()).select_from(Listing).where(Listing.seller_id == "seller-9")
            )
        assert count == 0
