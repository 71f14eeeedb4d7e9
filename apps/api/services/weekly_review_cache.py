"""
Weekly Review Content Cache

Generated weekly-review content is cached per user and review week so
reopening a review never calls the generator twice. The entry is dropped
when the review is sealed. Redis outages degrade to "no cache": the caller
regenerates.
"""

import logging
from typing import Optional

import redis

from core.cache import cache_key, delete_cache, get_cache, set_cache
from core.config import settings
from services.habit_state import WeeklyContent

logger = logging.getLogger(__name__)

CACHE_PREFIX = "weekly_review"


def _key(user_id: str, week_key: str) -> str:
    return cache_key(CACHE_PREFIX, user_id or "local", week_key)


def read_weekly_content(
    user_id: str, week_key: str, client: Optional[redis.Redis] = None
) -> Optional[WeeklyContent]:
    cached = get_cache(_key(user_id, week_key), client=client)
    if not isinstance(cached, dict):
        return None
    try:
        return WeeklyContent(
            reflection=cached["reflection"],
            archetype=cached["archetype"],
            narrative=cached.get("narrative", ""),
        )
    except KeyError:
        logger.warning(f"Discarding malformed weekly review cache entry for {user_id} {week_key}")
        return None


def write_weekly_content(
    user_id: str, week_key: str, content: WeeklyContent, client: Optional[redis.Redis] = None
) -> bool:
    payload = {
        "reflection": content.reflection,
        "archetype": content.archetype,
        "narrative": content.narrative,
    }
    return set_cache(_key(user_id, week_key), payload, settings.WEEKLY_REVIEW_CACHE_TTL, client=client)


def invalidate_weekly_content(user_id: str, week_key: str, client: Optional[redis.Redis] = None) -> bool:
    return delete_cache(_key(user_id, week_key), client=client)
