from functools import lru_cache

from cardpoints.config import settings
from cardpoints.engine.service import RewardEngine, build_engine


@lru_cache(maxsize=1)
def get_engine() -> RewardEngine:
    return build_engine(settings.rule_catalog_file, max_retries=settings.cap_conflict_max_retries)
