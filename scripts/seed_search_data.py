#!/usr/bin/env python3
"""
Seed script for local search testing.

Creates realistic test data for:
- Retailers (mixed tiers, one ineligible)
- Canonical ammunition products across common calibers
- Source listings linked to products, with 30 days of price observations
- A price correction window

Usage:
    python scripts/seed_search_data.py           # Seed all data
    python scripts/seed_search_data.py --clear   # Clear all data
    python scripts/seed_search_data.py --stats   # Show data stats
"""

import asyncio
import random
import sys
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import delete, func, select

from ammo_search.db.models import (
    Base,
    Price,
    PriceCorrection,
    Product,
    ProductEmbedding,
    ProductLink,
    Retailer,
    SourceProduct,
)
from ammo_search.db.session import AsyncSessionLocal, engine

RETAILERS = [
    ("Ammo Depot", "STANDARD", "ELIGIBLE"),
    ("Brass Bros", "PREMIUM", "ELIGIBLE"),
    ("Bulk Rounds Direct", "STANDARD", "ELIGIBLE"),
    ("Shady Surplus", "STANDARD", "INELIGIBLE"),
]

# (caliber, typical price per round, [(brand, line, grain, bullet_type, purpose, rounds)])
CATALOG = {
    "9mm": (0.30, [
        ("Federal", "American Eagle", 115, "FMJ", "Target", 50),
        ("Federal", "HST", 147, "JHP", "Defense", 50),
        ("Speer", "Gold Dot", 124, "BJHP", "Defense", 50),
        ("Blazer", "Brass", 115, "FMJ", "Target", 50),
        ("Hornady", "Critical Defense", 115, "JHP", "Defense", 25),
        ("Winchester", "White Box", 115, "FMJ", "Target", 100),
    ]),
    "5.56 NATO": (0.45, [
        ("PMC", "X-TAC", 55, "FMJ", "Target", 20),
        ("Federal", "XM193", 55, "FMJ", "Target", 20),
        ("Hornady", "Black", 62, "FMJ", "Target", 20),
    ]),
    ".223 Remington": (0.55, [
        ("Hornady", "Frontier", 55, "FMJ", "Target", 20),
        ("Barnes", "VOR-TX", 55, "TSX", "Hunting", 20),
    ]),
    ".308 Winchester": (1.20, [
        ("Federal", "Gold Medal Match", 175, "OTM", "Target", 20),
        ("Hornady", "Precision Hunter", 178, "ELD-X", "Hunting", 20),
        ("Winchester", "Deer Season XP", 150, "SP", "Hunting", 20),
    ]),
    "12 Gauge": (0.90, [
        ("Federal", "Power-Shok 00 Buck", None, "BUCKSHOT", "Defense", 5),
        ("Winchester", "Super-X Slug", None, "SLUG", "Hunting", 5),
    ]),
    ".45 ACP": (0.55, [
        ("Federal", "HST", 230, "JHP", "Defense", 20),
        ("Blazer", "Brass", 230, "FMJ", "Target", 50),
    ]),
}

HISTORY_DAYS = 30


def observed_price(per_round: float, rounds: int) -> Decimal:
    """Box price around the typical per-round cost."""
    return Decimal(str(round(per_round * rounds * random.uniform(0.8, 1.3), 2)))


async def clear_all_data():
    """Clear all catalog and price data."""
    print("Clearing existing data...")
    async with AsyncSessionLocal() as db:
        for model in (PriceCorrection, Price, ProductLink, SourceProduct, ProductEmbedding, Product, Retailer):
            await db.execute(delete(model))
        await db.commit()
        print("✅ All data cleared")


async def seed_retailers() -> list:
    print("Seeding retailers...")
    async with AsyncSessionLocal() as db:
        retailers = [
            Retailer(name=name, tier=tier, visibility_status=status, website_url=f"https://{name.lower().replace(' ', '')}.example.com")
            for name, tier, status in RETAILERS
        ]
        db.add_all(retailers)
        await db.commit()
        print(f"✅ Created {len(retailers)} retailers")
        return [r.id for r in retailers]


async def seed_products_and_prices(retailer_ids: list):
    """Create products and link each to a listing per retailer with price history."""
    print("Seeding products and prices...")
    now = datetime.utcnow()
    product_count = 0
    price_count = 0

    async with AsyncSessionLocal() as db:
        for caliber, (per_round, lines) in CATALOG.items():
            for brand, line, grain, bullet_type, purpose, rounds in lines:
                grain_text = f" {grain}gr" if grain else ""
                product = Product(
                    name=f"{brand} {line} {caliber}{grain_text} {bullet_type}",
                    brand=brand,
                    category=caliber,
                    caliber=caliber,
                    caliber_norm=caliber.lower(),
                    grain_weight=grain,
                    bullet_type=bullet_type,
                    purpose=purpose,
                    case_material="Brass",
                    round_count=rounds,
                    pressure_rating="STANDARD",
                    factory_new=True,
                    data_source="seed",
                    data_confidence=Decimal("0.900"),
                )
                db.add(product)
                await db.flush()
                product_count += 1

                for retailer_id in random.sample(retailer_ids, k=random.randint(1, len(retailer_ids))):
                    source_product = SourceProduct(
                        title=product.name,
                        url=f"https://example.com/listing/{product.id}/{retailer_id}",
                    )
                    db.add(source_product)
                    await db.flush()

                    db.add(
                        ProductLink(
                            source_product_id=source_product.id,
                            product_id=product.id,
                            status="MATCHED",
                            confidence=Decimal("0.950"),
                        )
                    )

                    for day in range(HISTORY_DAYS, 0, -1):
                        if random.random() < 0.3:
                            continue
                        db.add(
                            Price(
                                source_product_id=source_product.id,
                                retailer_id=retailer_id,
                                price=observed_price(per_round, rounds),
                                in_stock=random.random() > 0.15,
                                url=source_product.url,
                                observed_at=now - timedelta(days=day, hours=random.randint(0, 12)),
                                ingestion_run_type="SCRAPE",
                            )
                        )
                        price_count += 1

            # Periodic commit to avoid memory issues
            await db.commit()

        # Prices from the first retailer were entered in cents for two days
        db.add(
            PriceCorrection(
                scope_type="RETAILER",
                scope_id=str(retailer_ids[0]),
                action="IGNORE",
                start_ts=now - timedelta(days=12),
                end_ts=now - timedelta(days=10),
                reason="Seeded bad feed window",
                created_by="seed",
            )
        )
        await db.commit()

    print(f"✅ Created {product_count} products with {price_count} price observations")


async def show_data_stats():
    """Show current data statistics."""
    print("\n📊 Database Statistics:")
    print("=" * 50)

    async with AsyncSessionLocal() as db:
        for label, model in (
            ("Retailers", Retailer),
            ("Products", Product),
            ("Listings", SourceProduct),
            ("Prices", Price),
            ("Corrections", PriceCorrection),
            ("Embeddings", ProductEmbedding),
        ):
            total = (await db.execute(select(func.count()).select_from(model))).scalar()
            print(f"{label}: {total}")

        result = await db.execute(
            select(Product.caliber, func.count()).group_by(Product.caliber).order_by(Product.caliber)
        )
        for caliber, count in result.all():
            print(f"  - {caliber}: {count} products")


async def seed_all_data():
    """Seed all test data."""
    print("🌱 Seeding ammunition search test data...")
    print("=" * 50)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    retailer_ids = await seed_retailers()
    await seed_products_and_prices(retailer_ids)

    print("\n🎉 Seeding complete!")
    print("Run scripts/generate_embeddings_for_existing.py to enable vector search.")
    await show_data_stats()


async def main():
    """Main entry point."""
    if len(sys.argv) > 1:
        if sys.argv[1] == "--clear":
            await clear_all_data()
        elif sys.argv[1] == "--stats":
            await show_data_stats()
        elif sys.argv[1] == "--help":
            print(__doc__)
        else:
            print(f"Unknown option: {sys.argv[1]}")
            print("Use --help for usage information")
    else:
        await seed_all_data()


if __name__ == "__main__":
    asyncio.run(main())
