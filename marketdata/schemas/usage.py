from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime

class UsageWindow(BaseModel):
    count: int
    limit: int
    remaining: int
    reset_date: datetime

class UsageSnapshot(BaseModel):
    daily: Optional[UsageWindow] = None
    monthly: Optional[UsageWindow] = None
    data_type_count: Optional[int] = None

class UsageCheckResult(BaseModel):
    allowed: bool
    limit_type: Optional[str] = None  # "daily" | "monthly" when refused
    usage: UsageSnapshot = Field(default_factory=UsageSnapshot)
    error: Optional[str] = None

class UsageHistoryEntry(BaseModel):
    date: str
    count: int

class UsageStats(BaseModel):
    current: UsageSnapshot
    by_type: Dict[str, int] = Field(default_factory=dict)
    history: List[UsageHistoryEntry] = Field(default_factory=list)
