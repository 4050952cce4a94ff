"""
Pytest configuration and fixtures.
"""
import os

# Settings are read at import time by several modules
os.environ.setdefault("FINIX_USERNAME", "UStest")
os.environ.setdefault("FINIX_PASSWORD", "test-password")
os.environ.setdefault("FINIX_APPLICATION_ID_US", "APus_test")
os.environ.setdefault("FINIX_APPLICATION_ID_CA", "APca_test")
os.environ.setdefault("FINIX_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("APP_ENV", "test")

import uuid
from datetime import timedelta
from typing import Any, AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config import Settings
from database.models import (
    Base,
    Listing,
    MerchantOnboarding,
    Order,
    RefundRequest,
    UserProfile,
)
from database.types import utcnow
from integrations.finix_client import FinixClient

BUYER_ID = "buyer-1"
SELLER_ID = "seller-1"
MERCHANT_ID = "MUseller0001"


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        finix_username="UStest",
        finix_password="test-password",
        finix_application_id_us="APus_test",
        finix_application_id_ca="APca_test",
        finix_webhook_secret="whsec_test_secret",
        finix_retry_max_attempts=3,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/1",
        app_name="marketplace-escrow-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory bound to a fresh in-memory database."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def finix() -> AsyncMock:
    """Finix client double; every API method is an AsyncMock."""
    return AsyncMock(spec=FinixClient)


class Factory:
    """Inserts rows in the shapes the services expect."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _save(self, row: Any) -> Any:
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)
        return row

    async def listing(
        self,
        seller_id: str = SELLER_ID,
        price: int = 125000,
        currency: str = "USD",
        status: str = "active",
        **kwargs: Any,
    ) -> Listing:
        return await self._save(
            Listing(
                id=uuid.uuid4(),
                seller_id=seller_id,
                status=status,
                brand=kwargs.pop("brand", "Omega"),
                model=kwargs.pop("model", "Speedmaster"),
                reference=kwargs.pop("reference", "311.30.42.30.01.005"),
                condition=kwargs.pop("condition", "excellent"),
                price=price,
                currency=currency,
                images=kwargs.pop("images", ["https://img.example/1.jpg"]),
                **kwargs,
            )
        )

    async def profile(self, user_id: str = BUYER_ID, **kwargs: Any) -> UserProfile:
        values = {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "phone": "5551234567",
            "location": {
                "line1": "1 Main St",
                "city": "San Francisco",
                "region": "CA",
                "postal_code": "94105",
                "country": "USA",
            },
        }
        values.update(kwargs)
        return await self._save(UserProfile(id=user_id, **values))

    async def merchant(
        self,
        user_id: str = SELLER_ID,
        merchant_id: Optional[str] = MERCHANT_ID,
        onboarding_state: str = "APPROVED",
        **kwargs: Any,
    ) -> MerchantOnboarding:
        return await self._save(
            MerchantOnboarding(
                id=uuid.uuid4(),
                user_id=user_id,
                merchant_id=merchant_id,
                onboarding_state=onboarding_state,
                **kwargs,
            )
        )

    async def order(
        self,
        listing: Optional[Listing] = None,
        buyer_id: str = BUYER_ID,
        status: str = "reserved",
        expires_in_minutes: int = 120,
        **kwargs: Any,
    ) -> Order:
        listing = listing or await self.listing()
        now = utcnow()
        expires_at = now + timedelta(minutes=expires_in_minutes)
        order = await self._save(
            Order(
                id=uuid.uuid4(),
                listing_id=listing.id,
                buyer_id=buyer_id,
                seller_id=listing.seller_id,
                listing_snapshot={
                    "brand": listing.brand,
                    "model": listing.model,
                    "price": listing.price,
                    "images": listing.images,
                    "thumbnail": (listing.images or [None])[0],
                },
                amount=kwargs.pop("amount", listing.price),
                currency=kwargs.pop("currency", listing.currency),
                status=status,
                reserved_at=now,
                reservation_expires_at=expires_at,
                fraud_session_id=kwargs.pop("fraud_session_id", f"fs_{uuid.uuid4().hex}"),
                metadata_=kwargs.pop("metadata_", {}),
                **kwargs,
            )
        )
        if status == "reserved":
            listing.reserved_until = expires_at
            listing.reserved_by_user_id = buyer_id
            listing.reserved_by_order_id = order.id
            await self.db.commit()
        return order

    async def refund(
        self,
        order: Order,
        status: str = "pending",
        amount: Optional[int] = None,
        **kwargs: Any,
    ) -> RefundRequest:
        return await self._save(
            RefundRequest(
                id=uuid.uuid4(),
                order_id=order.id,
                buyer_id=order.buyer_id,
                seller_id=order.seller_id,
                requested_amount=amount if amount is not None else order.amount,
                original_transfer_amount=order.amount,
                currency=order.currency,
                buyer_reason=kwargs.pop("buyer_reason", "The item arrived damaged on the bezel"),
                status=status,
                product_returned=kwargs.pop(
                    "product_returned", status in ("return_requested", "return_received")
                ),
                product_return_confirmed=kwargs.pop(
                    "product_return_confirmed", status == "return_received"
                ),
                finix_transfer_id=kwargs.pop("finix_transfer_id", order.finix_transfer_id or "TRtest"),
                idempotency_id=kwargs.pop("idempotency_id", f"refund-{uuid.uuid4().hex}"),
                **kwargs,
            )
        )


@pytest.fixture
def factory(test_db: AsyncSession) -> Factory:
    """Row factory bound to the test session."""
    return Factory(test_db)
