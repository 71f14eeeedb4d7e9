"""
Weekly review content cache tests (FakeRedis-backed).
"""

import sys
import os
import json
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from redis.exceptions import ConnectionError as RedisConnectionError

from core.cache import cache_key
from core.config import settings
from services.habit_state import WeeklyContent
from services.weekly_review_cache import (
    invalidate_weekly_content,
    read_weekly_content,
    write_weekly_content,
)

CONTENT = WeeklyContent(reflection="A steady week.", archetype="The Consistent Runner", narrative="More of the same.")


class TestCacheKey:

    def test_skips_none(self):
        assert cache_key("weekly_review", "u1", None, "2026-W42") == "weekly_review:u1:2026-W42"

    def test_kwargs_sorted(self):
        assert cache_key("p", b=2, a=1) == "p:a:1:b:2"


class TestWeeklyReviewCache:

    def test_write_then_read(self, fake_redis):
        assert write_weekly_content("u1", "2026-W42", CONTENT, client=fake_redis) is True
        assert read_weekly_content("u1", "2026-W42", client=fake_redis) == CONTENT
        assert fake_redis.ttls["weekly_review:u1:2026-W42"] == settings.WEEKLY_REVIEW_CACHE_TTL

    def test_keyed_per_user_and_week(self, fake_redis):
        write_weekly_content("u1", "2026-W42", CONTENT, client=fake_redis)
        assert read_weekly_content("u2", "2026-W42", client=fake_redis) is None
        assert read_weekly_content("u1", "2026-W43", client=fake_redis) is None

    def test_signed_out_user_uses_local_key(self, fake_redis):
        write_weekly_content("", "2026-W42", CONTENT, client=fake_redis)
        assert "weekly_review:local:2026-W42" in fake_redis.store

    def test_malformed_entry_ignored(self, fake_redis):
        fake_redis.store["weekly_review:u1:2026-W42"] = json.dumps({"reflection": "only half"})
        assert read_weekly_content("u1", "2026-W42", client=fake_redis) is None
        fake_redis.store["weekly_review:u1:2026-W42"] = "{not json"
        assert read_weekly_content("u1", "2026-W42", client=fake_redis) is None

    def test_invalidate(self, fake_redis):
        write_weekly_content("u1", "2026-W42", CONTENT, client=fake_redis)
        assert invalidate_weekly_content("u1", "2026-W42", client=fake_redis) is True
        assert read_weekly_content("u1", "2026-W42", client=fake_redis) is None

    def test_redis_errors_degrade(self):
        broken = MagicMock()
        broken.get.side_effect = RedisConnectionError("down")
        broken.setex.side_effect = RedisConnectionError("down")
        assert read_weekly_content("u1", "2026-W42", client=broken) is None
        assert write_weekly_content("u1", "2026-W42", CONTENT, client=broken) is False
