"""实时价格合并：把最新推送价作为合成点追加到缓存的历史序列末尾（纯函数）"""

import math
from typing import Optional, Union

from sparkline_service.models.sparkline import LiveSparkline, SparklinePoint, SparklineSeries

LivePrice = Union[str, float, int, None]


def _parse_price(raw: LivePrice) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def merge_live_price(
    series: Optional[SparklineSeries],
    live_price: LivePrice,
    now_ms: int,
) -> Optional[LiveSparkline]:
    """
    无序列或序列为空时返回 None；
    价格缺失/非有限数，或当前时间不晚于最后一个历史点时原样返回；
    否则追加 {timestamp: now, value: price}，并以首点与实时价重新计算 is_positive。
    """
    if series is None or not series.points:
        return None

    unchanged = LiveSparkline(**series.model_dump(exclude={"has_live_point"}), has_live_point=False)
    price = _parse_price(live_price)
    if price is None:
        return unchanged

    if now_ms <= series.points[-1].timestamp:
        return unchanged

    return LiveSparkline(
        points=[*series.points, SparklinePoint(timestamp=now_ms, value=price)],
        is_positive=price >= series.points[0].value,
        last_updated=now_ms,
        has_live_point=True,
    )
