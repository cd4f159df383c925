from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime

# Data types understood by the fallback store and pipeline
US_STOCK = "us-stock"
JP_STOCK = "jp-stock"
ETF = "etf"
MUTUAL_FUND = "mutual-fund"
EXCHANGE_RATE = "exchange-rate"

DATA_TYPES = (US_STOCK, JP_STOCK, ETF, MUTUAL_FUND, EXCHANGE_RATE)

class ExchangeRateQuote(BaseModel):
    pair: str
    base: str
    target: str
    rate: float
    change: float = 0.0
    change_percent: float = 0.0
    last_updated: datetime
    source: str
    is_default: bool = False
    error: Optional[str] = None

class FallbackSnapshot(BaseModel):
    """Remote fallback documents, keyed by symbol inside each category."""
    stocks: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    etfs: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    mutual_funds: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    exchange_rates: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    def category(self, name: str) -> Dict[str, Dict[str, Any]]:
        return getattr(self, name)

    def is_empty(self) -> bool:
        return not any(self.category(name) for name in type(self).model_fields)

class SourceMetricsSummary(BaseModel):
    source: str
    requests: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: float = 0.0
    avg_response_time: float = 0.0
    error_types: Dict[str, int] = Field(default_factory=dict)

class SymbolCount(BaseModel):
    symbol: str
    count: int

class FailureStatistics(BaseModel):
    total_failures: int = 0
    by_date: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_symbol: Dict[str, int] = Field(default_factory=dict)
    most_failed_symbols: List[SymbolCount] = Field(default_factory=list)
    error: Optional[str] = None
