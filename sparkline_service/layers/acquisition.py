"""
Layer 1 – 数据获取层
封装上游历史 K 线接口（Hyperliquid info API），向上层提供统一的拉取接口。

Notes:
- 现货品种在上游以 "@<index>" 形式订阅，需要先加载现货市场列表做映射。
- HTTP 429 统一转换为 RateLimitError，交给重试策略处理；其余非 2xx 原样抛出。
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from sparkline_service.config import SparklineSettings, settings
from sparkline_service.layers.retry import HTTP_TOO_MANY_REQUESTS, RateLimitError

logger = logging.getLogger(__name__)


class CandleFetcher(Protocol):
    async def fetch_candles(
        self, symbol: str, interval: str, start_time: int, end_time: int
    ) -> List[Dict[str, Any]]:
        ...


def resolve_subscription_coin(market_type: str, symbol: str, spot_markets: Mapping[str, int]) -> str:
    """展示代码 → 上游订阅代码；永续（含 dex 前缀）原样返回"""
    if market_type != "spot":
        return symbol
    index = spot_markets.get(symbol)
    return f"@{index}" if index is not None else symbol


def sparkline_price_key(symbol: str, market_type: str, dex: Optional[str] = None) -> str:
    """实时价格表中的查询键：HIP-3 dex 永续为 "<dex>:<symbol>" """
    if market_type == "perp" and dex:
        return f"{dex}:{symbol}"
    return symbol


class CandleClient:
    """上游历史 K 线 HTTP 客户端"""

    def __init__(self, cfg: SparklineSettings = settings, client: Optional[httpx.AsyncClient] = None):
        self._url = cfg.CANDLE_API_URL
        self._client = client or httpx.AsyncClient(timeout=cfg.HTTP_TIMEOUT_S)
        self._spot_markets: Dict[str, int] = {}

    @property
    def spot_markets(self) -> Dict[str, int]:
        return dict(self._spot_markets)

    async def _post(self, body: Dict[str, Any]) -> Any:
        resp = await self._client.post(self._url, json=body)
        if resp.status_code == HTTP_TOO_MANY_REQUESTS:
            raise RateLimitError(f"上游限流 (429): {body.get('type')}")
        resp.raise_for_status()
        return resp.json()

    async def fetch_candles(
        self, symbol: str, interval: str, start_time: int, end_time: int
    ) -> List[Dict[str, Any]]:
        payload = await self._post({
            "type": "candleSnapshot",
            "req": {
                "coin": symbol,
                "interval": interval,
                "startTime": start_time,
                "endTime": end_time,
            },
        })
        return payload if isinstance(payload, list) else []

    async def refresh_spot_markets(self) -> Dict[str, int]:
        """加载现货市场列表：市场名 → universe 索引"""
        payload = await self._post({"type": "spotMeta"})
        universe = payload.get("universe", []) if isinstance(payload, dict) else []
        self._spot_markets = {
            m["name"]: int(m["index"])
            for m in universe
            if isinstance(m, dict) and "name" in m and "index" in m
        }
        logger.info(f"现货市场列表已加载，共 {len(self._spot_markets)} 个")
        return self.spot_markets

    def resolve(self, market_type: str, symbol: str) -> str:
        return resolve_subscription_coin(market_type, symbol, self._spot_markets)

    async def aclose(self) -> None:
        await self._client.aclose()
