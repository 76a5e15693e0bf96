"""
Sparkline 数据模型
  - SparklinePoint / SparklineSeries : 内部强类型走势序列
  - CacheKey                         : (market_type, symbol) 复合键，渲染为 "<market_type>:<symbol>"
  - MemoryEntry / PersistentRecord   : 两级缓存中的条目
  - Candle                           : 上游 K 线接口载荷，在系统边界处校验
"""

from typing import List

from pydantic import BaseModel, ConfigDict, Field

KEY_SEPARATOR = ":"


class SparklinePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: int
    value: float


class SparklineSeries(BaseModel):
    """一段按时间升序排列、时间戳不重复的走势序列"""

    points: List[SparklinePoint]
    is_positive: bool
    last_updated: int


class CacheKey(BaseModel):
    """
    交易品种的唯一标识

    带 dex 前缀的代码（如 "xyz:NVDA"）本身含有分隔符，
    解析时只按第一个分隔符切分。
    """

    model_config = ConfigDict(frozen=True)

    market_type: str
    symbol: str

    @classmethod
    def parse(cls, raw: str) -> "CacheKey":
        market_type, sep, symbol = raw.partition(KEY_SEPARATOR)
        if not sep or not market_type or not symbol:
            raise ValueError(f"非法的缓存键: {raw!r}")
        return cls(market_type=market_type, symbol=symbol)

    def render(self) -> str:
        return f"{self.market_type}{KEY_SEPARATOR}{self.symbol}"

    def __str__(self) -> str:
        return self.render()


class MemoryEntry(BaseModel):
    series: SparklineSeries
    expires_at: int

    def is_fresh(self, now_ms: int) -> bool:
        return now_ms < self.expires_at


class PersistentRecord(BaseModel):
    """持久化存储中的一条记录，按 (symbol, market_type) 唯一"""

    symbol: str
    market_type: str
    last_fetched_ts: int
    points: List[SparklinePoint]
    is_positive: bool

    @property
    def key(self) -> CacheKey:
        return CacheKey(market_type=self.market_type, symbol=self.symbol)

    @classmethod
    def from_series(cls, key: CacheKey, series: SparklineSeries, fetched_at: int) -> "PersistentRecord":
        return cls(
            symbol=key.symbol,
            market_type=key.market_type,
            last_fetched_ts=fetched_at,
            points=series.points,
            is_positive=series.is_positive,
        )

    def to_series(self) -> SparklineSeries:
        return SparklineSeries(
            points=self.points,
            is_positive=self.is_positive,
            last_updated=self.last_fetched_ts,
        )


class StaleRead(BaseModel):
    series: SparklineSeries
    is_stale: bool


class Candle(BaseModel):
    """上游 K 线，价格字段可能以字符串形式返回"""

    model_config = ConfigDict(extra="ignore")

    t: int = Field(description="开盘时间（毫秒）")
    o: float
    h: float
    l: float  # noqa: E741
    c: float
    v: float = 0.0


class LiveSparkline(SparklineSeries):
    has_live_point: bool = False
