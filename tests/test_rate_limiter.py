"""Rate limiting without Redis (per-process counting)"""

import uuid

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from crm_scheduling import rate_limiter
from crm_scheduling.rate_limiter import check_rate_limit, create_rate_limiter


def make_request(ip: str = "203.0.113.7") -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/geocoding/geocode",
            "headers": [],
            "client": (ip, 12345),
        }
    )


class TestCheckRateLimit:
    def test_counts_up_to_limit(self):
        key = f"test:{uuid.uuid4()}"
        results = [check_rate_limit(key, 3, 60, None) for _ in range(4)]
        assert [allowed for allowed, _, _ in results] == [True, True, True, False]
        assert results[2][1] == 3

    def test_window_resets(self, monkeypatch):
        key = f"test:{uuid.uuid4()}"
        now = [1_000_000]
        monkeypatch.setattr(rate_limiter.time, "time", lambda: now[0])

        assert check_rate_limit(key, 1, 60, None)[0]
        assert not check_rate_limit(key, 1, 60, None)[0]
        now[0] += 61
        assert check_rate_limit(key, 1, 60, None)[0]

    def test_expired_windows_are_dropped(self, monkeypatch):
        now = [int(rate_limiter.time.time())]
        monkeypatch.setattr(rate_limiter.time, "time", lambda: now[0])
        monkeypatch.setattr(rate_limiter, "_last_sweep", 0)
        monkeypatch.setattr(rate_limiter, "_windows", {})

        for i in range(1000):
            check_rate_limit(f"sweep:{i}", 5, 60, None)
        assert len(rate_limiter._windows) == 1000

        now[0] += 10_000
        check_rate_limit("sweep:latest", 5, 60, None)
        assert list(rate_limiter._windows) == ["sweep:latest"]

    def test_live_windows_survive_sweep(self, monkeypatch):
        now = [int(rate_limiter.time.time()) + 20_000]
        monkeypatch.setattr(rate_limiter.time, "time", lambda: now[0])
        monkeypatch.setattr(rate_limiter, "_last_sweep", 0)
        monkeypatch.setattr(rate_limiter, "_windows", {})

        check_rate_limit("sweep:long", 5, 3600, None)
        now[0] += 120
        check_rate_limit("sweep:other", 5, 60, None)
        assert "sweep:long" in rate_limiter._windows


class TestDependency:
    @pytest.mark.anyio
    async def test_redis_down_still_limits(self, monkeypatch):
        def no_redis():
            raise ConnectionError("redis down")

        monkeypatch.setattr(rate_limiter, "get_redis_client", no_redis)
        limiter = create_rate_limiter(limit=1, window_seconds=60, key_prefix=f"t{uuid.uuid4()}")

        await limiter(make_request())
        with pytest.raises(HTTPException) as exc:
            await limiter(make_request())
        assert exc.value.status_code == 429
        assert exc.value.headers["Retry-After"]

    @pytest.fixture
    def anyio_backend(self):
        return "asyncio"
