"""
Consumer visibility rules for raw price observations.

A price is shown to consumers only when:
- its retailer is eligible
- its merchant-retailer link, if one exists, is listed and active
- the affiliate feed run it came from has not been ignored
- scrape-sourced observations pass every adapter/compliance guardrail

The predicate is pure. `visible_observation_clause` states the same rules
in SQL for queries that aggregate in the database. Corrections are applied
separately by the correction overlay.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_

from ammo_search.db.models import (
    AffiliateFeedRun,
    MerchantRetailer,
    Price,
    Retailer,
    ScrapeAdapterStatus,
    Source,
)

RETAILER_ELIGIBLE = "ELIGIBLE"
LISTING_LISTED = "LISTED"
MERCHANT_ACTIVE = "ACTIVE"
RUN_TYPE_SCRAPE = "SCRAPE"


@dataclass(frozen=True)
class SourceGuardrails:
    """Compliance state of the source an observation was collected from."""

    adapter_id: Optional[str] = None
    robots_compliant: bool = False
    tos_reviewed_at: Optional[datetime] = None
    tos_approved_by: Optional[str] = None
    adapter_enabled: bool = False

    @classmethod
    def from_rows(
        cls, source: Optional[Source], adapter_status: Optional[ScrapeAdapterStatus]
    ) -> "SourceGuardrails":
        if source is None:
            return cls()
        return cls(
            adapter_id=source.adapter_id,
            robots_compliant=bool(source.robots_compliant),
            tos_reviewed_at=source.tos_reviewed_at,
            tos_approved_by=source.tos_approved_by,
            adapter_enabled=bool(adapter_status and adapter_status.enabled),
        )

    @property
    def all_pass(self) -> bool:
        return bool(
            self.adapter_id
            and self.robots_compliant
            and self.tos_reviewed_at is not None
            and self.tos_approved_by
            and self.adapter_enabled
        )


def visibility_failure(
    observation: Price,
    retailer: Optional[Retailer],
    merchant_link: Optional[MerchantRetailer],
    guardrails: Optional[SourceGuardrails] = None,
    feed_run: Optional[AffiliateFeedRun] = None,
) -> Optional[str]:
    """Return the first rule an observation fails, or None when it is visible."""
    if retailer is None or retailer.visibility_status != RETAILER_ELIGIBLE:
        return "retailer_ineligible"

    if merchant_link is not None and (
        merchant_link.listing_status != LISTING_LISTED
        or merchant_link.status != MERCHANT_ACTIVE
    ):
        return "merchant_unlisted"

    if feed_run is not None and feed_run.ignored_at is not None:
        return "feed_run_ignored"

    if observation.ingestion_run_type == RUN_TYPE_SCRAPE:
        if guardrails is None or not guardrails.all_pass:
            return "scrape_guardrail"

    return None


def is_visible(
    observation: Price,
    retailer: Optional[Retailer],
    merchant_link: Optional[MerchantRetailer],
    guardrails: Optional[SourceGuardrails] = None,
    feed_run: Optional[AffiliateFeedRun] = None,
) -> bool:
    """Check whether an observation may be shown to consumers."""
    return visibility_failure(observation, retailer, merchant_link, guardrails, feed_run) is None


def visible_observation_clause():
    """SQL form of `is_visible`.

    Expects Retailer joined, with MerchantRetailer, Source, ScrapeAdapterStatus
    and AffiliateFeedRun outer-joined the way the price resolver joins them.
    """
    return and_(
        Retailer.visibility_status == RETAILER_ELIGIBLE,
        or_(
            MerchantRetailer.id.is_(None),
            and_(
                MerchantRetailer.listing_status == LISTING_LISTED,
                MerchantRetailer.status == MERCHANT_ACTIVE,
            ),
        ),
        or_(AffiliateFeedRun.id.is_(None), AffiliateFeedRun.ignored_at.is_(None)),
        or_(
            Price.ingestion_run_type.is_(None),
            Price.ingestion_run_type != RUN_TYPE_SCRAPE,
            and_(
                Source.adapter_id.is_not(None),
                Source.adapter_id != "",
                Source.robots_compliant.is_(True),
                Source.tos_reviewed_at.is_not(None),
                Source.tos_approved_by.is_not(None),
                Source.tos_approved_by != "",
                ScrapeAdapterStatus.enabled.is_(True),
            ),
        ),
    )
