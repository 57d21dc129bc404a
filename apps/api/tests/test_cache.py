"""
Tests for the Redis analytics cache, with the client mocked.
"""
import json
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError

from core import cache
from core.cache import cache_key, get_cache, get_redis_client, invalidate_athlete_cache, set_cache
from core.config import settings


@pytest.fixture
def redis_client(monkeypatch):
    client = MagicMock()
    monkeypatch.setattr(settings, "CACHE_ENABLED", True)
    monkeypatch.setattr(cache, "_redis_client", client)
    yield client
    cache.reset_redis_client()


class TestCacheKey:
    def test_joins_parts_and_skips_none(self):
        assert cache_key("abc", "fitness", None, 90) == "analytics:abc:fitness:90"


class TestDisabled:
    def test_helpers_are_no_ops(self):
        assert get_redis_client() is None
        assert get_cache("analytics:x") is None
        assert set_cache("analytics:x", {"a": 1}) is False
        assert invalidate_athlete_cache("x") == 0


class TestWithRedis:
    def test_get_decodes_json(self, redis_client):
        redis_client.get.return_value = json.dumps({"records": []})
        assert get_cache("analytics:a:personal_records") == {"records": []}

    def test_miss(self, redis_client):
        redis_client.get.return_value = None
        assert get_cache("analytics:a:fitness") is None

    def test_set_uses_default_ttl(self, redis_client):
        assert set_cache("analytics:a:fitness", {"ctl": 40.0}) is True
        key, ttl, payload = redis_client.setex.call_args.args
        assert key == "analytics:a:fitness"
        assert ttl == settings.CACHE_TTL_ANALYTICS
        assert json.loads(payload) == {"ctl": 40.0}

    def test_invalidate_athlete(self, redis_client):
        redis_client.scan_iter.return_value = iter(["analytics:a:fitness", "analytics:a:personal_records"])
        redis_client.delete.return_value = 2
        assert invalidate_athlete_cache("a") == 2
        redis_client.scan_iter.assert_called_once_with(match="analytics:a:*")

    def test_errors_degrade_to_misses(self, redis_client):
        redis_client.get.side_effect = ConnectionError("gone")
        redis_client.setex.side_effect = ConnectionError("gone")
        assert get_cache("analytics:a:fitness") is None
        assert set_cache("analytics:a:fitness", {}) is False

    def test_unreachable_server(self, monkeypatch):
        monkeypatch.setattr(settings, "CACHE_ENABLED", True)
        cache.reset_redis_client()
        unreachable = MagicMock()
        unreachable.ping.side_effect = ConnectionError("refused")
        with patch("core.cache.redis.from_url", return_value=unreachable):
            assert get_redis_client() is None
