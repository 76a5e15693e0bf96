"""统一 API 响应模型与请求体"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

MarketType = Literal["perp", "spot"]


class ApiResponse(BaseModel):
    """标准 API 响应封装"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)


class SymbolsRequest(BaseModel):
    symbols: List[str] = Field(default_factory=list)
    market_type: MarketType = "perp"


class HydrateItem(BaseModel):
    symbol: str
    market_type: MarketType = "perp"


class HydrateRequest(BaseModel):
    items: List[HydrateItem] = Field(default_factory=list)


class PriceUpdateRequest(BaseModel):
    prices: Dict[str, str] = Field(default_factory=dict, description="symbol → 最新价格字符串")
