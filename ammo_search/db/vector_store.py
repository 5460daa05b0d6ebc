"""Vector similarity retrieval using pgvector."""

import logging
from typing import List, Sequence, Tuple

import numpy as np
from sqlalchemy import Float, String, cast, literal, select, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.types import UserDefinedType

from ammo_search.db.models import Product, ProductEmbedding

logger = logging.getLogger(__name__)


class Vector(UserDefinedType):
    """pgvector `vector` type, used as a CAST target."""

    cache_ok = True

    def get_col_spec(self, **kw):
        return "vector"


class VectorStore:
    """
    Vector database service for pgvector integration.

    Features:
    - Extension and index management
    - Cosine similarity search restricted by a product filter
    """

    def __init__(self):
        self._indexes_created = set()

    async def ensure_extension(self, db: AsyncSession):
        """Ensure pgvector extension is enabled."""
        try:
            await db.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
            await db.commit()
            logger.debug("pgvector extension enabled")
        except Exception as e:
            logger.warning(f"Failed to enable pgvector extension: {e}")
            await db.rollback()

    async def create_vector_index(self, db: AsyncSession, dimension: int):
        """Create the HNSW cosine index on product embeddings."""
        index_name = "idx_product_embeddings_vector"
        if index_name in self._indexes_created:
            return

        try:
            await db.execute(
                text(
                    f"""
                    CREATE INDEX IF NOT EXISTS {index_name}
                    ON product_embeddings
                    USING hnsw ((embedding::vector({int(dimension)})) vector_cosine_ops)
                    WITH (m = 16, ef_construction = 64)
                    """
                )
            )
            await db.commit()
            self._indexes_created.add(index_name)
            logger.info(f"Ensured vector index {index_name}")
        except Exception as e:
            logger.error(f"Failed to create vector index {index_name}: {e}")
            await db.rollback()
            raise

    async def search_similar_products(
        self,
        db: AsyncSession,
        embedding: np.ndarray | Sequence[float],
        condition: ColumnElement,
        skip: int = 0,
        limit: int = 20,
    ) -> List[Tuple[Product, float]]:
        """
        Search products by cosine similarity to a query embedding.

        Args:
            db: Database session
            embedding: Query embedding vector
            condition: Boolean filter over Product rows
            skip: Rows to skip
            limit: Maximum number of results

        Returns:
            List of (product, similarity) ordered by similarity descending
        """
        query_vector = "[" + ",".join(str(float(v)) for v in np.asarray(embedding).ravel()) + "]"
        distance = cast(ProductEmbedding.embedding, Vector()).op("<=>", return_type=Float)(
            cast(literal(query_vector, String), Vector())
        )

        query = (
            select(Product, (1 - distance).label("similarity"))
            .join(ProductEmbedding, ProductEmbedding.product_id == Product.id)
            .where(condition)
            .order_by(distance, Product.id)
            .offset(skip)
            .limit(limit)
        )

        result = await db.execute(query)
        return [(product, float(similarity)) for product, similarity in result.all()]


vector_store = VectorStore()
