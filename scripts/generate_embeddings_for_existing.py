"""Backfill embeddings for existing products."""

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from ammo_search.ai.embedding_service import embedding_service
from ammo_search.config import settings
from ammo_search.db.models import Product, ProductEmbedding
from ammo_search.db.session import AsyncSessionLocal

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def generate_embeddings_for_existing(
    batch_size: int = 100,
    limit: Optional[int] = None,
    missing_only: bool = True,
):
    """
    Generate and store embeddings for existing products.

    Args:
        batch_size: Number of products to process in each batch
        limit: Optional limit on total number of products to process
        missing_only: Skip products that already have an embedding for the current model
    """
    if not settings.vector_search_enabled:
        logger.warning("Vector search is disabled. Skipping embedding generation.")
        return

    logger.info("Starting embedding generation for existing products...")

    async with AsyncSessionLocal() as db:
        query = select(Product).order_by(Product.id)
        if missing_only:
            existing = select(ProductEmbedding.product_id).where(
                ProductEmbedding.model_name == embedding_service.model_name
            )
            query = query.where(Product.id.not_in(existing))
        if limit:
            query = query.limit(limit)

        result = await db.execute(query)
        all_products = result.scalars().all()

        total = len(all_products)
        logger.info(f"Found {total} products to process")

        if total == 0:
            logger.info("No products to process")
            return

        processed = 0
        failed = 0

        for i in range(0, total, batch_size):
            batch = all_products[i:i + batch_size]
            batch_num = (i // batch_size) + 1
            total_batches = (total + batch_size - 1) // batch_size

            logger.info(f"Processing batch {batch_num}/{total_batches} ({len(batch)} products)")

            try:
                texts = [embedding_service.build_product_text(p) for p in batch]
                # Model inference is CPU-bound; keep it off the event loop
                embeddings = await asyncio.to_thread(
                    embedding_service.generate_embeddings_batch, texts
                )

                for product, embedding in zip(batch, embeddings):
                    await db.merge(
                        ProductEmbedding(
                            product_id=product.id,
                            embedding=[float(v) for v in embedding],
                            model_name=embedding_service.model_name,
                            updated_at=datetime.utcnow(),
                        )
                    )
                await db.commit()

                processed += len(batch)
                logger.info(f"Processed {processed}/{total} products")

            except Exception as e:
                logger.error(f"Failed to process batch {batch_num}: {e}")
                await db.rollback()
                failed += len(batch)

        logger.info(
            f"Embedding generation complete: {processed} processed, {failed} failed "
            f"out of {total} total products"
        )


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generate embeddings for existing products")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=100,
        help="Number of products to process per batch (default: 100)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Limit number of products to process (default: all)",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Re-embed products that already have an embedding",
    )

    args = parser.parse_args()

    asyncio.run(generate_embeddings_for_existing(
        batch_size=args.batch_size,
        limit=args.limit,
        missing_only=not args.all,
    ))
