import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from billing.constants import CONFIRM_RATE_LIMIT
from billing.services import rate_limit


class FakePipeline:
    """Queues commands and applies them together, like a MULTI/EXEC block."""

    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.commands = []

    def set(self, key, value, ex=None, nx=False):
        self.commands.append(("set", key, value, ex, nx))
        return self

    def incr(self, key):
        self.commands.append(("incr", key))
        return self

    async def execute(self):
        if self.redis.down:
            raise RedisConnectionError("connection refused")
        results = []
        for command in self.commands:
            if command[0] == "set":
                _, key, value, ex, nx = command
                if nx and key in self.redis.counters:
                    results.append(None)
                    continue
                self.redis.counters[key] = value
                self.redis.ttls[key] = ex
                results.append(True)
            else:
                key = command[1]
                self.redis.counters[key] = self.redis.counters.get(key, 0) + 1
                results.append(self.redis.counters[key])
        self.commands = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for fixed-window counters."""

    def __init__(self, down=False):
        self.down = down
        self.counters = {}
        self.ttls = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)


@pytest.fixture
def fake_redis(monkeypatch):
    redis = FakeRedis()
    monkeypatch.setattr(rate_limit, "_redis", redis)
    return redis


async def test_hit_counts_within_window(fake_redis):
    assert await rate_limit.hit("k", limit=2, window=60) is True
    assert await rate_limit.hit("k", limit=2, window=60) is True
    assert await rate_limit.hit("k", limit=2, window=60) is False
    assert fake_redis.ttls == {"k": 60}


async def test_counter_is_created_with_its_window(fake_redis):
    for key in ("a", "b", "a"):
        await rate_limit.hit(key, limit=5, window=30)

    assert fake_redis.counters == {"a": 2, "b": 1}
    assert fake_redis.ttls == {"a": 30, "b": 30}

    # Window elapsed: Redis dropped the key, counting starts over
    del fake_redis.counters["a"], fake_redis.ttls["a"]
    assert await rate_limit.hit("a", limit=1, window=30) is True
    assert fake_redis.counters["a"] == 1


async def test_hit_without_redis_allows(monkeypatch):
    monkeypatch.setattr(rate_limit, "_redis", None)

    assert await rate_limit.hit("k", limit=0, window=60) is True


async def test_hit_fails_open_when_redis_is_down(monkeypatch):
    monkeypatch.setattr(rate_limit, "_redis", FakeRedis(down=True))

    assert await rate_limit.hit("k", limit=0, window=60) is True


async def test_confirm_is_throttled_per_user(client, user, other_user, auth_headers, fake_redis):
    body = {"external_reference": "xx_unknown"}

    for _ in range(CONFIRM_RATE_LIMIT):
        resp = await client.post("/api/payments/stripe/confirm", json=body, headers=auth_headers(user))
        assert resp.status_code == 400

    resp = await client.post("/api/payments/stripe/confirm", json=body, headers=auth_headers(user))
    assert resp.status_code == 429

    # Counters are per user
    resp = await client.post("/api/payments/stripe/confirm", json=body, headers=auth_headers(other_user))
    assert resp.status_code == 400
    assert fake_redis.counters[f"ratelimit:confirm:{user.id}"] == CONFIRM_RATE_LIMIT + 1
