"""
Read access to current matches for display layers.
Does not change generation or storage.
"""

from typing import Any, Dict, List, Optional, Tuple

from .config import Config
from .models import TIER_STRONG, TIER_LIKELY, TIER_POSSIBLE

TIER_FILTERS: Dict[str, Optional[Tuple[str, ...]]] = {
    "all": None,
    "confident": (TIER_STRONG, TIER_LIKELY),
    TIER_STRONG: (TIER_STRONG,),
    TIER_LIKELY: (TIER_LIKELY,),
    TIER_POSSIBLE: (TIER_POSSIBLE,),
}


def tiers_for_filter(tier: str) -> Optional[Tuple[str, ...]]:
    """Tiers selected by a filter name; None means no tier restriction."""
    if tier not in TIER_FILTERS:
        raise ValueError(f"Unknown tier filter: {tier!r}. Expected one of {sorted(TIER_FILTERS)}")
    return TIER_FILTERS[tier]


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return Config.DEFAULT_MATCH_LIMIT
    return max(1, min(Config.MAX_MATCH_LIMIT, int(limit)))


def get_project_matches(service, project_id: str, min_score: int = None,
                        limit: int = None, tier: str = "all",
                        offset: int = 0) -> List[Dict[str, Any]]:
    """Products matched to a project, best first, limited to current catalog members."""
    return service.match_manager.get_project_matches(
        project_id,
        min_score=Config.MATCH_MIN_SCORE if min_score is None else min_score,
        tiers=tiers_for_filter(tier),
        limit=clamp_limit(limit),
        offset=max(0, offset),
    )


def get_product_matched_projects(service, product_id: str, min_score: int = None,
                                 limit: int = None, tier: str = "all",
                                 offset: int = 0) -> List[Dict[str, Any]]:
    """Projects matched to a product, best first, limited to current catalog members."""
    return service.match_manager.get_product_matches(
        product_id,
        min_score=Config.MATCH_MIN_SCORE if min_score is None else min_score,
        tiers=tiers_for_filter(tier),
        limit=clamp_limit(limit),
        offset=max(0, offset),
    )


def get_image_matches(service, image_id: str, min_score: int = None,
                      limit: int = None, tier: str = "all") -> List[Dict[str, Any]]:
    """Matches whose evidence pair contains the image."""
    return service.match_manager.get_image_matches(
        image_id,
        min_score=Config.MATCH_MIN_SCORE if min_score is None else min_score,
        tiers=tiers_for_filter(tier),
        limit=clamp_limit(limit),
    )
