from sqlalchemy import Column, String, Float, Integer, DateTime, Boolean, Text, func
from conduit.database import Base


class UsageEventRecord(Base):
    __tablename__ = "usage_events"

    id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    provider_id = Column(String(50), nullable=False, index=True)
    model_id = Column(String(100), nullable=False)
    prompt_tokens = Column(Integer, default=0)
    completion_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    estimated_cost_usd = Column(Float, nullable=True)
    success = Column(Boolean, default=True)
    latency_ms = Column(Integer, default=0)
    context_included = Column(Boolean, default=False)


class ProviderBudgetRecord(Base):
    __tablename__ = "provider_budgets"

    provider_id = Column(String(50), primary_key=True)
    daily_usd = Column(Float, nullable=True)
    monthly_usd = Column(Float, nullable=True)
    block_on_exceed = Column(Boolean, default=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Preference(Base):
    __tablename__ = "preferences"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
