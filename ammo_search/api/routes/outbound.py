"""Signed outbound redirect to retailer product pages."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import RedirectResponse

from ammo_search.search.formatting import OutboundLinkSigner

logger = logging.getLogger(__name__)

router = APIRouter(tags=["outbound"])

link_signer = OutboundLinkSigner()


@router.get("/out")
async def outbound_redirect(
    u: str = Query(..., max_length=2048, description="Retailer URL"),
    sig: str = Query(..., min_length=64, max_length=64, description="HMAC-SHA256 signature"),
    rid: Optional[str] = Query(None, description="Retailer id"),
    pid: Optional[str] = Query(None, description="Product id"),
) -> RedirectResponse:
    """Redirect to a retailer URL only if the link was signed by this service."""
    if not u.lower().startswith(("http://", "https://")):
        raise HTTPException(status_code=400, detail="Unsupported outbound URL")

    if not link_signer.verify(u, sig, retailer_id=rid, product_id=pid):
        logger.warning(f"Rejected outbound link with bad signature (retailer={rid}, product={pid})")
        raise HTTPException(status_code=403, detail="Invalid outbound link signature")

    return RedirectResponse(url=u, status_code=302)
