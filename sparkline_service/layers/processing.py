"""
Layer 3 – 数据处理层
在系统边界校验上游 K 线载荷，并将收盘价整理为 Sparkline 序列。
"""

import logging
from typing import Any, Iterable, List, Optional

import pandas as pd
from pydantic import ValidationError

from sparkline_service.models.sparkline import Candle, SparklinePoint, SparklineSeries

logger = logging.getLogger(__name__)

MIN_POINTS = 2


def parse_candles(raw: Optional[Iterable[Any]]) -> List[Candle]:
    """逐条校验，格式错误的 K 线单独丢弃"""
    candles: List[Candle] = []
    for item in raw or []:
        try:
            candles.append(Candle.model_validate(item))
        except ValidationError as exc:
            logger.debug(f"丢弃非法 K 线: {item!r} ({exc.error_count()} 处错误)")
    return candles


def normalize_closes(candles: List[Candle]) -> pd.DataFrame:
    """
    收盘价标准化为 DataFrame

    标准列：timestamp, value；按时间升序，重复时间戳保留最后一条，剔除非有限值
    """
    if not candles:
        return pd.DataFrame(columns=["timestamp", "value"])

    df = pd.DataFrame({
        "timestamp": [c.t for c in candles],
        "value": [c.c for c in candles],
    })
    df["value"] = pd.to_numeric(df["value"], errors="coerce")
    df = df[df["value"].abs() != float("inf")].dropna(subset=["value"])
    df = df.drop_duplicates(subset=["timestamp"], keep="last")
    return df.sort_values("timestamp").reset_index(drop=True)


def candles_to_series(raw: Optional[Iterable[Any]], now_ms: int) -> Optional[SparklineSeries]:
    """
    将上游 K 线转换为 Sparkline 序列

    少于 2 个有效点视为拉取失败，返回 None；
    is_positive 由首末收盘价比较得出。
    """
    df = normalize_closes(parse_candles(raw))
    if len(df) < MIN_POINTS:
        return None

    points = [
        SparklinePoint(timestamp=int(ts), value=float(val))
        for ts, val in zip(df["timestamp"], df["value"])
    ]
    return SparklineSeries(
        points=points,
        is_positive=points[-1].value >= points[0].value,
        last_updated=now_ms,
    )
