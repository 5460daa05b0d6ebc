"""
Time-boxed price corrections evaluated at read time.

Active corrections are loaded once per resolution pass into an interval
index keyed by scope. Each scope keeps its windows sorted by start time
together with its longest window span, so the windows covering a given
instant are found with two bisections instead of a scan. Only the scopes
present in the fetched observations are loaded.

`correction_exclusion_clause` and `correction_factor_expression` apply the
same overlay inside a query, for aggregates computed by the database.
"""

import bisect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import String, and_, cast, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ammo_search.db.models import Price, PriceCorrection

logger = logging.getLogger(__name__)

SCOPE_PRODUCT = "PRODUCT"
SCOPE_RETAILER = "RETAILER"
SCOPE_SOURCE = "SOURCE"
SCOPE_AFFILIATE = "AFFILIATE"
SCOPE_FEED_RUN = "FEED_RUN"

ACTION_IGNORE = "IGNORE"
ACTION_MULTIPLIER = "MULTIPLIER"

# More simultaneous multipliers than this invalidates the observation
MAX_ACTIVE_MULTIPLIERS = 2

ScopeKey = Tuple[str, str]


@dataclass(frozen=True)
class CorrectionWindow:
    """One correction's action over its [start_ts, end_ts) window."""

    correction_id: int
    scope_type: str
    scope_id: str
    action: str
    start_ts: datetime
    end_ts: datetime
    factor: Optional[Decimal] = None

    @classmethod
    def from_row(cls, row: PriceCorrection) -> "CorrectionWindow":
        return cls(
            correction_id=row.id,
            scope_type=row.scope_type,
            scope_id=str(row.scope_id),
            action=row.action,
            start_ts=row.start_ts,
            end_ts=row.end_ts,
            factor=row.value,
        )

    def covers(self, ts: datetime) -> bool:
        return self.start_ts <= ts < self.end_ts


@dataclass(frozen=True)
class CorrectionOutcome:
    """Result of overlaying corrections on one observation."""

    excluded: bool = False
    multiplier: Decimal = Decimal("1")
    applied: Tuple[int, ...] = ()
    reason: Optional[str] = None

    def apply(self, price: Decimal) -> Decimal:
        return price * self.multiplier


NO_CORRECTION = CorrectionOutcome()


@dataclass
class _ScopeIntervals:
    starts: List[datetime] = field(default_factory=list)
    windows: List[CorrectionWindow] = field(default_factory=list)
    max_span: timedelta = timedelta(0)


def observation_scopes(observation: Price, product_id: int) -> List[ScopeKey]:
    """List every correction scope an observation belongs to."""
    scopes = [
        (SCOPE_PRODUCT, str(product_id)),
        (SCOPE_RETAILER, str(observation.retailer_id)),
    ]
    if observation.source_id is not None:
        scopes.append((SCOPE_SOURCE, str(observation.source_id)))
    if observation.affiliate_id:
        scopes.append((SCOPE_AFFILIATE, str(observation.affiliate_id)))
    # Feed-run corrections only apply to observations tied to a run
    if observation.ingestion_run_id:
        scopes.append((SCOPE_FEED_RUN, str(observation.ingestion_run_id)))
    return scopes


class CorrectionIndex:
    """Interval index over active corrections, grouped by scope."""

    def __init__(self, windows: Iterable[CorrectionWindow] = ()):
        self._scopes: Dict[ScopeKey, _ScopeIntervals] = {}
        for window in sorted(windows, key=lambda w: (w.start_ts, w.correction_id)):
            intervals = self._scopes.setdefault((window.scope_type, window.scope_id), _ScopeIntervals())
            intervals.starts.append(window.start_ts)
            intervals.windows.append(window)
            intervals.max_span = max(intervals.max_span, window.end_ts - window.start_ts)

    def __len__(self) -> int:
        return sum(len(intervals.windows) for intervals in self._scopes.values())

    @classmethod
    async def load(
        cls, db: AsyncSession, window_start: datetime, scopes: Iterable[ScopeKey]
    ) -> "CorrectionIndex":
        """Load unrevoked corrections overlapping [window_start, now) for the given scopes."""
        ids_by_type: Dict[str, set] = {}
        for scope_type, scope_id in scopes:
            ids_by_type.setdefault(scope_type, set()).add(scope_id)
        if not ids_by_type:
            return cls()

        result = await db.execute(
            select(PriceCorrection).where(
                PriceCorrection.revoked_at.is_(None),
                PriceCorrection.end_ts > window_start,
                or_(
                    *(
                        and_(
                            PriceCorrection.scope_type == scope_type,
                            PriceCorrection.scope_id.in_(sorted(scope_ids)),
                        )
                        for scope_type, scope_ids in ids_by_type.items()
                    )
                ),
            )
        )
        rows = result.scalars().all()
        logger.debug(f"Loaded {len(rows)} active price corrections")
        return cls(CorrectionWindow.from_row(row) for row in rows)

    def active_at(self, scope: ScopeKey, ts: datetime) -> List[CorrectionWindow]:
        """Return the windows for a scope that cover the given instant."""
        intervals = self._scopes.get(scope)
        if intervals is None:
            return []

        # Only windows starting within max_span before ts can still be open
        lo = bisect.bisect_left(intervals.starts, ts - intervals.max_span)
        hi = bisect.bisect_right(intervals.starts, ts)
        return [w for w in intervals.windows[lo:hi] if w.covers(ts)]

    def resolve(self, scopes: Iterable[ScopeKey], observed_at: datetime) -> CorrectionOutcome:
        """Combine every correction active on an observation at its observed time."""
        if not self._scopes:
            return NO_CORRECTION

        multipliers: List[CorrectionWindow] = []
        for scope in scopes:
            for window in self.active_at(scope, observed_at):
                if window.action == ACTION_IGNORE:
                    return CorrectionOutcome(
                        excluded=True, applied=(window.correction_id,), reason="ignored"
                    )
                if window.action == ACTION_MULTIPLIER:
                    multipliers.append(window)

        if not multipliers:
            return NO_CORRECTION

        applied = tuple(w.correction_id for w in multipliers)
        if len(multipliers) > MAX_ACTIVE_MULTIPLIERS:
            return CorrectionOutcome(excluded=True, applied=applied, reason="multiplier_overflow")

        factor = Decimal("1")
        for window in multipliers:
            if window.factor is None or window.factor <= 0:
                return CorrectionOutcome(excluded=True, applied=applied, reason="invalid_multiplier")
            factor *= window.factor

        return CorrectionOutcome(multiplier=factor, applied=applied)


def _active_for_observation(product_id_column, action: str):
    """Correlated match of PriceCorrection rows active on the enclosing Price row."""
    return and_(
        PriceCorrection.revoked_at.is_(None),
        PriceCorrection.action == action,
        Price.observed_at >= PriceCorrection.start_ts,
        Price.observed_at < PriceCorrection.end_ts,
        or_(
            and_(PriceCorrection.scope_type == SCOPE_PRODUCT, PriceCorrection.scope_id == cast(product_id_column, String)),
            and_(PriceCorrection.scope_type == SCOPE_RETAILER, PriceCorrection.scope_id == cast(Price.retailer_id, String)),
            and_(PriceCorrection.scope_type == SCOPE_SOURCE, PriceCorrection.scope_id == cast(Price.source_id, String)),
            and_(PriceCorrection.scope_type == SCOPE_AFFILIATE, PriceCorrection.scope_id == Price.affiliate_id),
            and_(
                PriceCorrection.scope_type == SCOPE_FEED_RUN,
                Price.ingestion_run_id.is_not(None),
                PriceCorrection.scope_id == Price.ingestion_run_id,
            ),
        ),
    )


def correction_exclusion_clause(product_id_column):
    """SQL form of `CorrectionIndex.resolve` returning an excluded outcome.

    Correlates against Price and the column carrying the canonical product id.
    """
    multiplier = _active_for_observation(product_id_column, ACTION_MULTIPLIER)
    multiplier_count = (
        select(func.count(PriceCorrection.id))
        .where(multiplier)
        .correlate_except(PriceCorrection)
        .scalar_subquery()
    )
    return or_(
        exists()
        .where(_active_for_observation(product_id_column, ACTION_IGNORE))
        .correlate_except(PriceCorrection),
        multiplier_count > MAX_ACTIVE_MULTIPLIERS,
        exists()
        .where(multiplier, or_(PriceCorrection.value.is_(None), PriceCorrection.value <= 0))
        .correlate_except(PriceCorrection),
    )


def correction_factor_expression(product_id_column):
    """Product of the active multipliers on an observation, 1 when none apply."""
    return (
        select(func.coalesce(func.exp(func.sum(func.ln(PriceCorrection.value))), 1))
        .where(_active_for_observation(product_id_column, ACTION_MULTIPLIER))
        .correlate_except(PriceCorrection)
        .scalar_subquery()
    )
