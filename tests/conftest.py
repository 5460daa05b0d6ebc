"""Shared fixtures: in-memory SQLite database and catalog builders."""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ammo_search.db.models import (
    Base,
    Price,
    Product,
    ProductLink,
    Retailer,
    SourceProduct,
)

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class CatalogBuilder:
    """Creates products, retailers and linked price observations."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._created = datetime.utcnow() - timedelta(days=10)

    async def _save(self, obj):
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def retailer(
        self,
        name: str = "Ammo Depot",
        tier: str = "STANDARD",
        visibility_status: str = "ELIGIBLE",
        **kwargs,
    ) -> Retailer:
        return await self._save(
            Retailer(name=name, tier=tier, visibility_status=visibility_status, **kwargs)
        )

    async def product(
        self,
        name: str,
        caliber: str = "9mm",
        round_count: Optional[int] = 50,
        created_at: Optional[datetime] = None,
        **kwargs,
    ) -> Product:
        # Distinct creation times keep "newest first" ordering deterministic
        self._created += timedelta(minutes=1)
        kwargs.setdefault("caliber_norm", caliber.lower() if caliber else None)
        return await self._save(
            Product(
                name=name,
                caliber=caliber,
                round_count=round_count,
                created_at=created_at or self._created,
                **kwargs,
            )
        )

    async def listing(
        self,
        product: Product,
        retailer: Retailer,
        price: str,
        observed_at: Optional[datetime] = None,
        in_stock: bool = True,
        link_status: str = "MATCHED",
        confidence: str = "0.900",
        **price_kwargs,
    ) -> Price:
        """One source listing linked to the product, with one observation."""
        source_product = await self._save(
            SourceProduct(title=product.name, url=f"https://example.com/p/{product.id}")
        )
        await self._save(
            ProductLink(
                source_product_id=source_product.id,
                product_id=product.id,
                status=link_status,
                confidence=Decimal(confidence),
            )
        )
        return await self._save(
            Price(
                source_product_id=source_product.id,
                retailer_id=retailer.id,
                price=Decimal(price),
                currency="USD",
                in_stock=in_stock,
                url=price_kwargs.pop("url", f"https://{retailer.name.lower().replace(' ', '')}.com/{product.id}"),
                observed_at=observed_at or datetime.utcnow() - timedelta(hours=1),
                **price_kwargs,
            )
        )

    async def observation(
        self,
        listing: Price,
        price: str,
        observed_at: datetime,
        in_stock: bool = True,
        **price_kwargs,
    ) -> Price:
        """Another observation on an existing listing."""
        return await self._save(
            Price(
                source_product_id=listing.source_product_id,
                retailer_id=price_kwargs.pop("retailer_id", listing.retailer_id),
                price=Decimal(price),
                currency="USD",
                in_stock=in_stock,
                url=listing.url,
                observed_at=observed_at,
                **price_kwargs,
            )
        )


@pytest.fixture
def catalog(db):
    return CatalogBuilder(db)


class _SharedSession:
    """Async context manager handing out an existing session without closing it."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def __aenter__(self) -> AsyncSession:
        return self.session

    async def __aexit__(self, *exc_info):
        return False


@pytest.fixture
def shared_session_factory(db):
    """Session factory for components that open their own sessions (statistics cache)."""
    return lambda: _SharedSession(db)
