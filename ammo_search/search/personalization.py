"""
Personalization pipeline ("lens") interface.

A lens is an external, optional post-retrieval step. It receives the
candidates with their resolved prices and link confidence, and returns an
ordered, possibly filtered subset plus metadata describing what it did.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from ammo_search.search.formatting import SearchHit
from ammo_search.search.intent import SearchIntent


@dataclass
class LensMetadata:
    id: str
    auto_applied: bool = False
    reason_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "auto_applied": self.auto_applied, "reason_code": self.reason_code}


@dataclass
class LensResult:
    """
    Output of a lens.

    `zero_results` is set when candidates existed but none were eligible
    under the lens, as opposed to nothing matching the query at all.
    """

    hits: List[SearchHit] = field(default_factory=list)
    metadata: Optional[LensMetadata] = None
    zero_results: bool = False


class PersonalizationPipeline(Protocol):
    def valid_lens_ids(self) -> List[str]:
        ...

    async def apply(
        self,
        intent: SearchIntent,
        hits: Sequence[SearchHit],
        lens_id: Optional[str],
        request_id: str,
    ) -> LensResult:
        """
        Order and filter hits.

        Raises:
            InvalidLensError: If `lens_id` is not a known lens
        """
        ...
