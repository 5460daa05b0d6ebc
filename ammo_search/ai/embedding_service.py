"""Embedding generation for search queries and catalog products."""

import hashlib
import logging
from collections import OrderedDict
from typing import Any, List, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from ammo_search.config import settings

logger = logging.getLogger(__name__)


class EmbeddingService:
    """
    Service for generating text embeddings using sentence transformers.

    Features:
    - Lazy model loading on first use
    - Bounded in-memory cache for repeated queries
    - Batch embedding generation for catalog backfill
    """

    MAX_CACHE_ENTRIES = 2048

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name or settings.embedding_model
        self._model: Optional[SentenceTransformer] = None
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()

    def _get_model(self) -> SentenceTransformer:
        if self._model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
            logger.info(f"Successfully loaded model: {self.model_name}")
        return self._model

    def _get_cache_key(self, text: str) -> str:
        text_hash = hashlib.sha256(text.encode('utf-8')).hexdigest()
        return f"{self.model_name}:{text_hash}"

    def generate_embedding(self, text: str, use_cache: bool = True) -> np.ndarray:
        """
        Generate a normalized embedding for a single text.

        Args:
            text: Text to embed
            use_cache: Whether to use cache

        Returns:
            Embedding vector
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        cache_key = self._get_cache_key(text)
        if use_cache and cache_key in self._cache:
            self._cache.move_to_end(cache_key)
            return self._cache[cache_key]

        embedding = self._get_model().encode(text, normalize_embeddings=True, show_progress_bar=False)

        if use_cache:
            self._cache[cache_key] = embedding
            if len(self._cache) > self.MAX_CACHE_ENTRIES:
                self._cache.popitem(last=False)

        return embedding

    def generate_embeddings_batch(self, texts: List[str], batch_size: int = 32) -> List[np.ndarray]:
        """Generate embeddings for many texts at once."""
        if not texts:
            return []
        embeddings = self._get_model().encode(
            texts,
            batch_size=batch_size,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return list(embeddings)

    @staticmethod
    def build_product_text(product: Any) -> str:
        """Flatten the searchable product attributes into one text."""
        parts = [
            product.name,
            product.brand,
            product.caliber,
            f"{product.grain_weight} grain" if product.grain_weight else None,
            product.bullet_type,
            product.case_material,
            product.purpose,
            product.description,
        ]
        return " ".join(str(p) for p in parts if p)


embedding_service = EmbeddingService()
