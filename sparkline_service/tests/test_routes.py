"""
sparkline-service HTTP 路由测试

通过 TestClient 驱动完整应用：上游 K 线接口替换为进程内假客户端，
持久化后端设为 none（纯内存模式），无需真实数据库或网络。
"""

import os
import sys
import time
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

# 确保仓库根目录（sparkline_service/ 的父目录）在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sparkline_service.layers.acquisition import resolve_subscription_coin  # noqa: E402

SPOT_MARKETS = {"HYPE/USDC": 107}


class _FakeCandleClient:
    """替代 CandleClient：返回截至 15 分钟前的 96 根 K 线"""

    instances = []

    def __init__(self, cfg=None, client=None):
        self.calls = []
        _FakeCandleClient.instances.append(self)

    async def refresh_spot_markets(self):
        return dict(SPOT_MARKETS)

    def resolve(self, market_type, symbol):
        return resolve_subscription_coin(market_type, symbol, SPOT_MARKETS)

    async def fetch_candles(self, symbol, interval, start_time, end_time):
        self.calls.append(symbol)
        step = 15 * 60 * 1000
        last = end_time - step
        return [
            {"t": last - (95 - i) * step, "o": "1", "h": "1", "l": "1", "c": str(100 + i), "v": "1"}
            for i in range(96)
        ]

    async def aclose(self):
        return None


@pytest.fixture(scope="module")
def client():
    from sparkline_service.config import settings
    with patch.object(settings, "STORE_BACKEND", "none"), \
         patch("sparkline_service.main.CandleClient", _FakeCandleClient):
        from sparkline_service.main import app
        with TestClient(app) as c:
            yield c


def _wait_for_sparkline(client, path: str, timeout: float = 3.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        body = client.get(path).json()
        if body["data"]["sparkline"] is not None:
            return body
        time.sleep(0.05)
    raise AssertionError(f"{path} 未在 {timeout}s 内拉取完成")


class TestHealthRoutes:
    def test_health(self, client):
        r = client.get("/health")
        data = r.json()["data"]
        assert r.status_code == 200 and data["status"] == "ok"
        assert data["store"] == {"ready": False, "backend": None}

    def test_healthz(self, client):
        assert client.get("/healthz").json()["status"] == "ok"

    def test_readyz(self, client):
        assert client.get("/readyz").json()["ready"] is True

    def test_root(self, client):
        body = client.get("/").json()
        assert "version" in body and "docs" in body

    def test_process_time_header(self, client):
        assert client.get("/healthz").headers["X-Process-Time"].endswith("ms")


class TestSparklineRoutes:
    def test_invalid_market_type(self, client):
        assert client.get("/api/sparklines/futures/BTC").status_code == 422

    def test_miss_then_background_fetch(self, client):
        first = client.get("/api/sparklines/perp/BTC").json()
        assert first["success"] is True
        assert first["data"]["key"] == "perp:BTC"
        body = _wait_for_sparkline(client, "/api/sparklines/perp/BTC")
        assert len(body["data"]["sparkline"]["points"]) == 96
        assert body["data"]["sparkline"]["is_positive"] is True
        assert body["data"]["cache_version"] >= 1

    def test_dex_symbol_key(self, client):
        body = client.get("/api/sparklines/perp/xyz:NVDA").json()
        assert body["data"]["key"] == "perp:xyz:NVDA"

    def test_spot_symbol_resolved(self, client):
        _wait_for_sparkline(client, "/api/sparklines/spot/HYPE/USDC")
        assert "@107" in _FakeCandleClient.instances[-1].calls

    def test_live_price_merge(self, client):
        _wait_for_sparkline(client, "/api/sparklines/perp/ETH")
        r = client.put("/api/sparklines/prices", json={"prices": {"ETH": "50"}})
        assert r.json()["data"]["updated"] == 1
        live = client.get("/api/sparklines/perp/ETH", params={"live": "true"}).json()["data"]["sparkline"]
        assert live["has_live_point"] is True
        assert len(live["points"]) == 97
        assert live["points"][-1]["value"] == 50.0
        assert live["is_positive"] is False

    def test_prefetch(self, client):
        r = client.post("/api/sparklines/prefetch", json={"symbols": ["SOL", "DOGE", "SOL"], "market_type": "perp"})
        assert r.status_code == 200 and r.json()["data"]["queued"] == 2

    def test_prefetch_invalid_market(self, client):
        r = client.post("/api/sparklines/prefetch", json={"symbols": ["SOL"], "market_type": "options"})
        assert r.status_code == 422

    def test_hydrate_without_store(self, client):
        r = client.post("/api/sparklines/hydrate", json={"items": [{"symbol": "AVAX", "market_type": "perp"}]})
        data = r.json()["data"]
        assert data["requested"] == 1 and data["hydrated"] == 0


class TestControlRoutes:
    def test_visibility(self, client):
        r = client.post("/api/visibility", json={"symbols": ["ARB", "OP"], "market_type": "perp"})
        assert r.status_code == 200
        assert set(r.json()["data"]["prioritized"]) <= {"perp:ARB", "perp:OP"}
        assert client.delete("/api/visibility").json()["success"] is True

    def test_pause_resume(self, client):
        assert client.post("/api/fetching/pause").json()["success"] is True
        assert client.get("/api/cache/stats").json()["data"]["queue"]["paused"] is True
        assert client.post("/api/fetching/resume").json()["success"] is True
        assert client.get("/api/cache/stats").json()["data"]["queue"]["paused"] is False

    def test_lifecycle(self, client):
        assert client.post("/api/lifecycle/background").json()["success"] is True
        data = client.post("/api/lifecycle/foreground").json()["data"]
        assert data["refreshed"] is False and data["refresh_trigger"] == 0


class TestCacheRoutes:
    def test_stats(self, client):
        data = client.get("/api/cache/stats").json()["data"]
        assert data["persistent"]["ready"] is False
        assert data["persistent"]["total_entries"] == 0
        assert data["memory"]["max_entries"] == 150

    def test_clear(self, client):
        _wait_for_sparkline(client, "/api/sparklines/perp/LINK")
        assert client.post("/api/cache/clear").json()["success"] is True
        assert client.get("/api/cache/stats").json()["data"]["memory"]["entries"] == 0
