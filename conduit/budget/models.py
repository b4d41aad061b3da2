import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UsageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    provider_id: str
    model_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: Optional[float] = None
    success: bool = True
    latency_ms: int = 0
    context_included: bool = False


class UsageTotals(BaseModel):
    provider_id: str
    model_id: str  # "*" when grouped by provider only
    request_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0


class Budget(BaseModel):
    daily_usd: Optional[float] = None
    monthly_usd: Optional[float] = None
    block_on_exceed: bool = False


class BudgetPeriod(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class BudgetAlert(BaseModel):
    provider_id: str
    period: BudgetPeriod
    limit_usd: float
    projected_usd: float
    blocked: bool
    timestamp: datetime
    message: str
