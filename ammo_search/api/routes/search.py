"""
Ammunition search API endpoints.

Provides:
- Natural-language product search with explicit filters and sorting
- Tier-shaped results (X-User-Tier header)
- Search suggestions for typeahead
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, ValidationInfo, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from ammo_search.api.deps import get_database, get_search_service, get_user_tier
from ammo_search.config import settings
from ammo_search.errors import SearchError
from ammo_search.search.intent import ExplicitFilters, UserTier
from ammo_search.search.service import SearchOptions, SearchService, SortBy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/search", tags=["search"])

# ============================================================================
# Request/Response Models
# ============================================================================


class SearchFilters(BaseModel):
    """Explicit filters. These are always applied as hard filters."""

    category: Optional[str] = Field(None, max_length=100, description="Caliber, e.g. '9mm' or '.223/5.56'")
    purpose: Optional[str] = Field(None, max_length=50)
    brand: Optional[str] = Field(None, max_length=100)
    case_material: Optional[str] = Field(None, max_length=50)
    min_grain: Optional[int] = Field(None, ge=0)
    max_grain: Optional[int] = Field(None, ge=0)
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    in_stock: Optional[bool] = None

    # Premium tier only; ignored for standard callers
    bullet_type: Optional[str] = Field(None, max_length=20)
    pressure_rating: Optional[str] = Field(None, max_length=20)
    is_subsonic: Optional[bool] = None
    short_barrel_optimized: Optional[bool] = None
    low_flash: Optional[bool] = None
    match_grade: Optional[bool] = None
    min_velocity: Optional[int] = Field(None, ge=0)
    max_velocity: Optional[int] = Field(None, ge=0)

    @field_validator("max_grain", "max_price", "max_velocity")
    @classmethod
    def max_not_below_min(cls, v, info: ValidationInfo):
        min_field = info.field_name.replace("max_", "min_")
        minimum = info.data.get(min_field)
        if v is not None and minimum is not None and v < minimum:
            raise ValueError(f"{info.field_name} must not be less than {min_field}")
        return v

    def to_explicit(self) -> ExplicitFilters:
        return ExplicitFilters(**self.model_dump())


class SearchRequest(BaseModel):
    """Search request body."""

    query: str = Field("", max_length=500, description="Free-text search query")
    page: int = Field(1, ge=1)
    limit: int = Field(settings.search_default_limit, ge=1, le=settings.search_max_limit)
    sort_by: SortBy = Field(SortBy.RELEVANCE)
    use_vector_search: bool = True
    filters: SearchFilters = Field(default_factory=SearchFilters)
    lens_id: Optional[str] = Field(None, max_length=64, description="Personalization lens id")


class SuggestionsResponse(BaseModel):
    """Search suggestions response."""

    suggestions: List[str]


# ============================================================================
# API Endpoints
# ============================================================================


@router.post("")
async def search_products(
    request: SearchRequest,
    tier: UserTier = Depends(get_user_tier),
    db: AsyncSession = Depends(get_database),
    service: SearchService = Depends(get_search_service),
) -> Dict[str, Any]:
    """
    Search ammunition products.

    Supports:
    - Natural-language queries ("9mm for home defense under $20")
    - Explicit hard filters, tier-gated for advanced attributes
    - Sorting by relevance, price per round, date or price context
    - Facets and search metadata
    """
    options = SearchOptions(
        page=request.page,
        limit=request.limit,
        sort_by=request.sort_by,
        use_vector_search=request.use_vector_search,
        filters=request.filters.to_explicit(),
        lens_id=request.lens_id,
        tier=tier,
    )

    try:
        return await service.search(db, request.query, options)
    except SearchError as e:
        logger.error(f"Search error ({e.status_code}): {e.message}")
        raise HTTPException(status_code=e.status_code, detail={"error": e.message, **e.details})
    except Exception as e:
        logger.error(f"Product search error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Search temporarily unavailable")


@router.get("/suggestions", response_model=SuggestionsResponse)
async def get_search_suggestions(
    q: str = Query(..., min_length=1, max_length=200, description="Partial search query"),
    service: SearchService = Depends(get_search_service),
) -> SuggestionsResponse:
    """Typeahead suggestions for common platforms, calibers and purposes."""
    return SuggestionsResponse(suggestions=service.get_search_suggestions(q))
